"""Main-content extraction: boilerplate removal + readability-style scoring.

Turns rendered page HTML into an :class:`ExtractedContent` holding the
cleaned HTML of the winning subtree and the structure derived from it.

Pipeline:
    1. strip boilerplate selectors, hidden and empty elements
    2. drop low text-density fragments (leftover nav / ad clusters)
    3. pick the best-scoring candidate (priority selectors, then every
       ``div``/``section``/``article``; ``body`` when nothing reaches the
       minimum score)
    4. clean the winner (attributes, whitespace, short-paragraph merging)
    5. derive headings / links / images / lists and metrics
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from bs4 import BeautifulSoup, NavigableString, Tag

from pagemill.config import ExtractOptions
from pagemill.errors import ExtractionError, NoContentFound
from pagemill.scraper.models import (
    ContentMetrics,
    ExtractedContent,
    Heading,
    Image,
    Link,
    ListBlock,
)

logger = logging.getLogger(__name__)

Node = Union[BeautifulSoup, Tag]

# ---------------------------------------------------------------------------
# Selector lists
# ---------------------------------------------------------------------------

REMOVE_SELECTORS: Tuple[str, ...] = (
    "nav", "header", "footer", "aside",
    ".nav", ".navigation", ".menu", ".sidebar",
    ".header", ".footer", ".ad", ".ads", ".advertisement",
    ".social", ".share", ".comment", ".comments",
    ".related", ".recommendation", ".popup", ".modal",
    "script", "style", "noscript", "iframe",
    '[role="navigation"]', '[role="banner"]', '[role="contentinfo"]',
    '[aria-label*="navigation"]', '[aria-label*="menu"]',
)

HIDDEN_SELECTORS: Tuple[str, ...] = (
    '[style*="display:none"]',
    '[style*="display: none"]',
    "[hidden]",
    ".hidden",
    ".hide",
)

CONTENT_SELECTORS: Tuple[str, ...] = (
    "article",
    "main",
    '[role="main"]',
    ".main-content",
    ".content",
    ".post-content",
    ".article-content",
    ".entry-content",
    "#content",
    "#main",
    ".container .content",
    "body",
)

_HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
_KEEP_ATTRS = {"href", "src", "alt", "title"}
_POSITIVE_RE = re.compile(r"content|main|article|post|entry")
_NEGATIVE_RE = re.compile(r"sidebar|nav|menu|footer|header|ad")
_LANGUAGE_CLASS_RE = re.compile(r"^(?:language|lang)-\w+$")
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ReadabilityThresholds:
    """Empirical scoring constants.

    These are calibration values carried over unchanged from the heuristics
    the scorer was tuned with; adjust them per corpus rather than treating
    them as derived truths.
    """

    min_winning_score: float = 10.0
    link_density_limit: float = 0.3
    text_density_limit: float = 0.1
    short_text_chars: int = 50
    max_links_in_fragment: int = 3
    max_images_in_fragment: int = 2
    short_paragraph_chars: int = 50
    length_divisor: float = 100.0
    length_cap: float = 25.0
    paragraph_weight: float = 2.0
    paragraph_cap: float = 20.0
    avg_paragraph_divisor: float = 50.0
    avg_paragraph_cap: float = 15.0
    positive_keyword_bonus: float = 25.0
    negative_keyword_penalty: float = 15.0
    link_density_penalty: float = 20.0
    heading_bonus: float = 3.0
    list_bonus: float = 2.0
    image_weight: float = 2.0
    image_cap: float = 10.0
    words_per_minute: int = 200


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _is_empty(tag: Tag) -> bool:
    """True when *tag* has no child elements and no non-whitespace text."""
    return tag.find(True) is None and not tag.get_text().strip()


def _class_and_id(tag: Node) -> str:
    if not isinstance(tag, Tag) or isinstance(tag, BeautifulSoup):
        return ""
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    return (" ".join(classes) + " " + (tag.get("id") or "")).lower()


def _inside_pre(tag: Tag) -> bool:
    return tag.name in ("pre", "code") or tag.find_parent("pre") is not None


class ContentExtractor:
    """Readability-style main content extractor built on BeautifulSoup."""

    def __init__(self, thresholds: Optional[ReadabilityThresholds] = None) -> None:
        self.thresholds = thresholds or ReadabilityThresholds()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def extract(self, html: str, options: Optional[ExtractOptions] = None) -> ExtractedContent:
        """Extract and clean the main content of *html*.

        Raises:
            NoContentFound: The document contains no element at all.
            ExtractionError: Parsing or cleaning failed unexpectedly.
        """
        options = options or ExtractOptions()
        try:
            soup = BeautifulSoup(html or "", "html.parser")
            self.remove_unwanted(soup, REMOVE_SELECTORS + tuple(options.remove_selectors))

            content_selectors = options.content_selectors or CONTENT_SELECTORS
            element = self.find_main_content(soup, content_selectors)
            if element is None:
                raise NoContentFound("No main content found")

            self.clean(element)
            headings, links, images, lists = self.structured_data(element)
            metrics = self.metrics(element)
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"Content extraction failed: {exc}") from exc

        return ExtractedContent(
            html=element.decode_contents(),
            text=element.get_text().strip(),
            headings=headings,
            links=links,
            images=images,
            lists=lists,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Boilerplate removal
    # ------------------------------------------------------------------
    def remove_unwanted(self, soup: BeautifulSoup, selectors: Tuple[str, ...] = REMOVE_SELECTORS) -> None:
        for selector in selectors + HIDDEN_SELECTORS:
            for tag in soup.select(selector):
                if not tag.decomposed:
                    tag.decompose()

        for tag in soup.find_all(["p", "div", "span"]):
            if not tag.decomposed and _is_empty(tag):
                tag.decompose()

        t = self.thresholds
        for tag in soup.find_all(True):
            if tag.decomposed or tag.name in ("html", "head", "body"):
                continue
            text = tag.get_text().strip()
            inner = tag.decode_contents()
            if not text or not inner:
                continue
            if (
                len(text) / len(inner) < t.text_density_limit
                and len(text) < t.short_text_chars
                and (
                    len(tag.find_all("a")) > t.max_links_in_fragment
                    or len(tag.find_all("img")) > t.max_images_in_fragment
                )
            ):
                tag.decompose()

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------
    def score(self, element: Node) -> float:
        """Readability score of *element*; higher means more content-like."""
        t = self.thresholds
        text = element.get_text().strip()
        text_len = len(text)
        score = min(text_len / t.length_divisor, t.length_cap)

        paragraphs = element.find_all("p")
        score += min(len(paragraphs) * t.paragraph_weight, t.paragraph_cap)
        if paragraphs:
            avg_len = text_len / len(paragraphs)
            score += min(avg_len / t.avg_paragraph_divisor, t.avg_paragraph_cap)

        attrs = _class_and_id(element)
        if _POSITIVE_RE.search(attrs):
            score += t.positive_keyword_bonus
        if _NEGATIVE_RE.search(attrs):
            score -= t.negative_keyword_penalty

        link_text = "".join(a.get_text() for a in element.find_all("a"))
        link_density = len(link_text) / text_len if text_len else 0.0
        if link_density > t.link_density_limit:
            score -= t.link_density_penalty

        score += len(element.find_all(_HEADING_TAGS)) * t.heading_bonus
        score += len(element.find_all(["ul", "ol"])) * t.list_bonus
        score += min(len(element.find_all("img")) * t.image_weight, t.image_cap)
        return score

    def find_main_content(
        self, soup: BeautifulSoup, content_selectors: Tuple[str, ...] = CONTENT_SELECTORS
    ) -> Optional[Node]:
        best: Optional[Node] = None
        best_score = 0.0

        for selector in content_selectors:
            element = soup.select_one(selector)
            if element is None:
                continue
            candidate_score = self.score(element)
            if candidate_score > best_score:
                best, best_score = element, candidate_score

        if best is None or best_score < self.thresholds.min_winning_score:
            for element in soup.find_all(["div", "section", "article"]):
                candidate_score = self.score(element)
                if candidate_score > best_score:
                    best, best_score = element, candidate_score

        if best is not None and best_score >= self.thresholds.min_winning_score:
            logger.debug("Main content <%s> scored %.1f", best.name, best_score)
            return best

        # Fragments parsed without a <body> fall back to the document root.
        fallback = soup.body
        if fallback is None and soup.find(True) is not None:
            fallback = soup
        if fallback is None:
            return None
        logger.debug("No candidate reached %.1f; falling back to <body>", self.thresholds.min_winning_score)
        return fallback

    # ------------------------------------------------------------------
    # Cleaning
    # ------------------------------------------------------------------
    def clean(self, element: Node) -> None:
        for tag in element.find_all(["script", "style", "noscript"]):
            if not tag.decomposed:
                tag.decompose()

        for tag in element.find_all(True):
            self._strip_attributes(tag)
            if tag.name == "div" and tag.find(True) is None and tag.get_text().strip():
                tag.name = "p"

        for tag in element.find_all(True):
            if tag.find(True) is None and tag.string and not _inside_pre(tag):
                tag.string.replace_with(_WS_RE.sub(" ", tag.string).strip())

        for tag in element.find_all(["p", "div"]):
            if not tag.decomposed and _is_empty(tag):
                tag.decompose()

        self._merge_short_paragraphs(element)

    def _strip_attributes(self, tag: Tag) -> None:
        kept = {}
        for name, value in tag.attrs.items():
            if name in _KEEP_ATTRS or name.startswith("data-"):
                kept[name] = value
            elif name == "start" and tag.name == "ol":
                kept[name] = value
            elif name in ("colspan", "rowspan") and tag.name in ("td", "th"):
                kept[name] = value
            elif name == "class" and tag.name in ("pre", "code"):
                languages = [c for c in (value or []) if _LANGUAGE_CLASS_RE.match(c)]
                if languages:
                    kept[name] = languages
        tag.attrs = kept

    def _merge_short_paragraphs(self, element: Node) -> None:
        limit = self.thresholds.short_paragraph_chars
        for paragraph in element.find_all("p"):
            if paragraph.decomposed or len(paragraph.get_text().strip()) >= limit:
                continue
            nxt = paragraph.find_next_sibling()
            if nxt is None or nxt.name != "p" or len(nxt.get_text().strip()) >= limit:
                continue
            paragraph.append(NavigableString(" "))
            for child in list(nxt.contents):
                paragraph.append(child.extract())
            nxt.decompose()

    # ------------------------------------------------------------------
    # Structure & metrics
    # ------------------------------------------------------------------
    def structured_data(
        self, element: Node
    ) -> Tuple[List[Heading], List[Link], List[Image], List[ListBlock]]:
        headings = [
            Heading(level=int(tag.name[1]), text=tag.get_text().strip(), id=tag.get("id") or None)
            for tag in element.find_all(_HEADING_TAGS)
        ]

        links: List[Link] = []
        for tag in element.find_all("a", href=True):
            href = tag["href"]
            if href and not href.startswith("#"):
                links.append(Link(text=tag.get_text().strip(), url=href, title=tag.get("title") or None))

        images = [
            Image(src=tag["src"], alt=tag.get("alt") or "", title=tag.get("title") or None)
            for tag in element.find_all("img", src=True)
        ]

        lists = [
            ListBlock(type=tag.name, items=[li.get_text().strip() for li in tag.find_all("li")])
            for tag in element.find_all(["ul", "ol"])
        ]
        return headings, links, images, lists

    def metrics(self, element: Node) -> ContentMetrics:
        text = element.get_text()
        words = text.split()
        return ContentMetrics(
            char_count=len(text),
            word_count=len(words),
            paragraph_count=len(element.find_all("p")),
            heading_count=len(element.find_all(_HEADING_TAGS)),
            link_count=len(element.find_all("a", href=True)),
            image_count=len(element.find_all("img", src=True)),
            list_count=len(element.find_all(["ul", "ol"])),
            estimated_reading_time_min=math.ceil(len(words) / self.thresholds.words_per_minute),
        )
