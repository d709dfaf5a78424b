"""HTML → Markdown conversion with structure-preserving rules.

Built on ``markdownify``; :class:`PageMarkdownConverter` overrides the tags
whose default rendering loses structure (tables, lists, code, quotes, links,
images, definition lists).  Conversion is wrapped by a pre-processing pass
over the HTML string and a line-oriented post-processing pass over the
Markdown, then scored for content preservation and structure.
"""

from __future__ import annotations

import logging
import math
import re
import time
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup
from markdownify import ATX, UNDERLINED, MarkdownConverter, chomp

from pagemill.config import ConvertOptions
from pagemill.errors import ConversionError
from pagemill.scraper.models import ConversionResult, MarkdownMetrics, QualityScore

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200

_LANGUAGE_CLASS_RE = re.compile(r"language-(\w+)")
_CONTENT_LINE_RE = re.compile(r"^(.+)$", re.MULTILINE)
_WORD_RE = re.compile(r"\b\w+\b")


# ---------------------------------------------------------------------------
# Converter rules
# ---------------------------------------------------------------------------

def _code_language(el) -> str:
    """Fence language from ``data-language`` or a ``language-*`` class on <pre> or its <code>."""
    candidates = [el]
    code = el.find("code")
    if code is not None:
        candidates.append(code)
    for node in candidates:
        if node.get("data-language"):
            return node["data-language"]
        classes = node.get("class") or []
        if isinstance(classes, str):
            classes = classes.split()
        for cls in classes:
            match = _LANGUAGE_CLASS_RE.match(cls)
            if match:
                return match.group(1)
    return ""


class PageMarkdownConverter(MarkdownConverter):
    """markdownify converter with pagemill's tag rules.

    One instance per conversion: referenced-style links are collected on the
    instance while converting.
    """

    def __init__(self, link_style: str = "inlined", **options) -> None:
        super().__init__(**options)
        self.link_style = link_style
        self.references: List[Tuple[str, Optional[str]]] = []

    def convert_blockquote(self, el, text, parent_tags):
        text = (text or "").strip("\n").strip()
        if "_inline" in parent_tags:
            return " " + text + " "
        if not text:
            return ""
        quoted = "\n".join("> " + line if line.strip() else ">" for line in text.split("\n"))
        return "\n\n" + quoted + "\n\n"

    # -- tables ----------------------------------------------------------
    def convert_table(self, el, text, parent_tags):
        return "\n\n" + text.strip("\n") + "\n\n"

    def convert_td(self, el, text, parent_tags):
        cell = (text or "").strip().replace("\n", " ").replace("|", r"\|")
        return " " + cell + " |"

    convert_th = convert_td

    def convert_tr(self, el, text, parent_tags):
        cells = el.find_all(["td", "th"], recursive=False)
        row = "|" + text.rstrip() + "\n"
        if el.find("th", recursive=False) is not None:
            row += "| " + " | ".join("---" for _ in cells) + " |\n"
        return row

    # -- code ------------------------------------------------------------
    def convert_pre(self, el, text, parent_tags):
        if not text:
            return ""
        text = text.strip("\n")
        fence = "```"
        while fence in text:
            fence += "`"
        return "\n\n%s%s\n%s\n%s\n\n" % (fence, _code_language(el), text, fence)

    # -- lists -----------------------------------------------------------
    def convert_li(self, el, text, parent_tags):
        text = (text or "").strip()
        if not text:
            return ""
        parent = el.parent
        if parent is not None and parent.name == "ol":
            start = str(parent.get("start") or "").strip()
            first = int(start) if start.lstrip("-").isdigit() else 1
            prefix = "%d. " % (first + len(el.find_previous_siblings("li")))
        else:
            prefix = self.options["bullets"][0] + " "
        text = _CONTENT_LINE_RE.sub(lambda m: "    " + m.group(1), text)
        return prefix + text[4:] + "\n"

    # -- definition lists ------------------------------------------------
    def convert_dl(self, el, text, parent_tags):
        text = text.strip()
        return "\n\n" + text + "\n\n" if text else ""

    def convert_dt(self, el, text, parent_tags):
        text = " ".join((text or "").split())
        if "_inline" in parent_tags:
            return " " + text + " "
        return "\n\n**%s**\n" % text if text else ""

    def convert_dd(self, el, text, parent_tags):
        text = (text or "").strip()
        if "_inline" in parent_tags:
            return " " + text + " "
        return ": %s\n\n" % text if text else ""

    # -- links & images --------------------------------------------------
    def convert_a(self, el, text, parent_tags):
        if "_noformat" in parent_tags:
            return text
        prefix, suffix, text = chomp(text)
        href = el.get("href")
        if not href or href == text:
            return prefix + text + suffix
        if not text:
            return ""
        title = el.get("title")
        if self.link_style == "referenced":
            self.references.append((href, title))
            return "%s[%s][%d]%s" % (prefix, text, len(self.references), suffix)
        title_part = ' "%s"' % title.replace('"', r"\"") if title else ""
        return "%s[%s](%s%s)%s" % (prefix, text, href, title_part, suffix)

    def convert_img(self, el, text, parent_tags):
        src = el.get("src") or ""
        if not src:
            return ""
        alt = el.get("alt") or ""
        title = el.get("title") or ""
        title_part = ' "%s"' % title.replace('"', r"\"") if title else ""
        return "![%s](%s%s)" % (alt, src, title_part)

    convert_strike = MarkdownConverter.convert_del

    def reference_block(self) -> str:
        lines = []
        for number, (href, title) in enumerate(self.references, start=1):
            title_part = ' "%s"' % title.replace('"', r"\"") if title else ""
            lines.append("[%d]: %s%s" % (number, href, title_part))
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Pre / post processing
# ---------------------------------------------------------------------------

_PRE_BLOCK_RE = re.compile(r"(<pre\b.*?</pre>)", re.IGNORECASE | re.DOTALL)
_INLINE_CODE_RE = re.compile(r"<code([^>]*)>(.*?)</code>", re.IGNORECASE | re.DOTALL)
_EMPTY_P_RE = re.compile(r"<p>\s*</p>", re.IGNORECASE)
_DOUBLE_BR_RE = re.compile(r"<br\s*/?>\s*<br\s*/?>", re.IGNORECASE)
_STRONG_EM_RE = re.compile(r"<(strong|b)><(em|i)>(.*?)</(em|i)></(strong|b)>", re.IGNORECASE)
_EM_STRONG_RE = re.compile(r"<(em|i)><(strong|b)>(.*?)</(strong|b)></(em|i)>", re.IGNORECASE)

_FENCE_RE = re.compile(r"^\s*(`{3,})")
_LIST_ITEM_RE = re.compile(r"^(\s*)([*+-]|\d+\.)\s+(.+)$")
_EMPTY_LIST_ITEM_RE = re.compile(r"^\s*([*+-]|\d+\.)\s*$")
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)$")
_EMPTY_HEADING_RE = re.compile(r"^#{1,6}\s*$")
_BLOCKQUOTE_RE = re.compile(r"^>\s+(.+)$")
_TABLE_CELL_SPLIT_RE = re.compile(r"(?<!\\)\|")


def preprocess_html(html: str) -> str:
    """Normalise the HTML string before conversion.

    Whitespace runs are collapsed outside ``<pre>`` blocks, newlines inside
    inline ``<code>`` are protected as ``&#10;``, empty paragraphs removed,
    double ``<br>`` turned into paragraph breaks and nested strong/em
    flattened to ``***text***``.
    """
    segments = _PRE_BLOCK_RE.split(html or "")
    for index in range(0, len(segments), 2):
        segment = _INLINE_CODE_RE.sub(
            lambda m: "<code%s>%s</code>" % (m.group(1), m.group(2).replace("\n", "&#10;")),
            segments[index],
        )
        segment = re.sub(r"\s+", " ", segment)
        segment = _EMPTY_P_RE.sub("", segment)
        segment = _DOUBLE_BR_RE.sub("</p><p>", segment)
        segment = _STRONG_EM_RE.sub(r"***\3***", segment)
        segment = _EM_STRONG_RE.sub(r"***\3***", segment)
        segments[index] = segment
    return "".join(segments)


def _normalise_table_row(line: str) -> str:
    cells = _TABLE_CELL_SPLIT_RE.split(line.strip())[1:-1]
    return "| " + " | ".join(cell.strip() for cell in cells) + " |"


def postprocess_markdown(markdown: str) -> str:
    """Tidy converter output line by line.

    Fenced code is left verbatim apart from blank lines hugging the fences;
    outside it, runs of blank lines collapse to one.
    Leading indentation survives only on list items and their continuation
    lines; a two-space hard break survives at a line end.
    """
    out: List[str] = []
    fence: Optional[str] = None
    fence_opened_at = 0
    in_list = False

    for raw in markdown.split("\n"):
        fence_match = _FENCE_RE.match(raw)
        if fence is not None:
            if fence_match and fence_match.group(1) == fence and not raw.strip().strip("`"):
                while len(out) > fence_opened_at and not out[-1].strip():
                    out.pop()
                fence = None
                out.append(raw.rstrip() if in_list else raw.strip())
            elif len(out) == fence_opened_at and not raw.strip():
                continue
            else:
                out.append(raw)
            continue

        if fence_match:
            fence = fence_match.group(1)
            out.append(raw.rstrip() if in_list else raw.strip())
            fence_opened_at = len(out)
            continue

        hard_break = raw.endswith("  ") and raw.strip() != ""
        line = raw.rstrip()

        if not line and out and not out[-1]:
            continue
        if _EMPTY_LIST_ITEM_RE.match(line):
            continue
        list_match = _LIST_ITEM_RE.match(line)
        if list_match:
            in_list = True
            indent, marker, body = list_match.groups()
            line = "%s%s %s" % (indent, marker, body)
        elif line.strip():
            if in_list and line[:1] in (" ", "\t"):
                pass
            else:
                in_list = False
                line = line.lstrip()

        stripped = line.lstrip()
        if _EMPTY_HEADING_RE.match(stripped):
            continue
        heading = _HEADING_RE.match(line)
        if heading:
            line = "%s %s" % heading.groups()
        if stripped.startswith(">"):
            if not stripped[1:].strip():
                line = line[: len(line) - len(stripped)] + ">"
            else:
                quote = _BLOCKQUOTE_RE.match(stripped)
                if quote:
                    line = line[: len(line) - len(stripped)] + "> " + quote.group(1)
        if stripped.startswith("|") and stripped.endswith("|") and len(stripped) > 1:
            line = line[: len(line) - len(stripped)] + _normalise_table_row(stripped)

        if hard_break and not line.endswith("  "):
            line += "  "
        out.append(line)

    if fence is not None:
        out.append(fence)

    text = "\n".join(out)
    text = text.strip()
    return text + "\n" if text else ""


# ---------------------------------------------------------------------------
# Metrics & quality
# ---------------------------------------------------------------------------

def html_to_text(html: str) -> str:
    """Plain text of *html*: scripts and styles dropped, whitespace collapsed."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return " ".join(soup.get_text(separator=" ").split())


def markdown_metrics(markdown: str) -> MarkdownMetrics:
    lines = markdown.split("\n")
    words = _WORD_RE.findall(markdown)
    table_lines = len(re.findall(r"\|.*\|", markdown))
    return MarkdownMetrics(
        total_lines=len(lines),
        non_empty_lines=sum(1 for line in lines if line.strip()),
        word_count=len(words),
        char_count=len(markdown),
        heading_count=len(re.findall(r"^#{1,6}\s+.+$", markdown, re.MULTILINE)),
        link_count=len(re.findall(r"\[.*?\]\(.*?\)", markdown)),
        image_count=len(re.findall(r"!\[.*?\]\(.*?\)", markdown)),
        code_block_count=len(re.findall(r"```[\s\S]*?```", markdown)),
        inline_code_count=len(re.findall(r"`[^`]+`", markdown)),
        table_count=math.ceil(table_lines / 2),
        blockquote_count=len(re.findall(r"^>\s*.+$", markdown, re.MULTILINE)),
        list_item_count=len(re.findall(r"^\s*[-*+]\s+.+$", markdown, re.MULTILINE)),
        ordered_list_item_count=len(re.findall(r"^\s*\d+\.\s+.+$", markdown, re.MULTILINE)),
        estimated_reading_time_min=math.ceil(len(words) / WORDS_PER_MINUTE),
    )


def structure_score(markdown: str) -> float:
    score = 0.0
    if re.search(r"^#{1,6}\s+.+$", markdown, re.MULTILINE):
        score += 0.2
    if re.search(r"^\s*[-*+]\s+.+$", markdown, re.MULTILINE) or re.search(
        r"^\s*\d+\.\s+.+$", markdown, re.MULTILINE
    ):
        score += 0.2
    if re.search(r"\[.*?\]\(.*?\)", markdown):
        score += 0.2
    if re.search(r"\*\*.*?\*\*", markdown) or re.search(r"\*.*?\*", markdown):
        score += 0.2
    if re.search(r"`.*?`", markdown):
        score += 0.2
    return min(round(score, 2), 1.0)


def recommendations(preservation: float, structure: float) -> List[str]:
    advice = []
    if preservation < 0.8:
        advice.append("Content preservation is low - check for removed elements")
    if structure < 0.5:
        advice.append(
            "Document structure may be poorly preserved - review heading and list conversion"
        )
    if preservation > 0.95 and structure > 0.8:
        advice.append("Excellent conversion quality")
    return advice


def quality(markdown: str, source_html: str) -> QualityScore:
    markdown_words = len(_WORD_RE.findall(markdown))
    html_words = len(_WORD_RE.findall(html_to_text(source_html)))
    preservation = markdown_words / html_words if html_words else 0.0
    structure = structure_score(markdown)
    return QualityScore(
        content_preservation_ratio=round(preservation, 4),
        structure_score=structure,
        quality_score=round((preservation + structure) / 2, 4),
        recommendations=recommendations(preservation, structure),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class MarkdownConverterService:
    """Stateless facade used by the pipeline."""

    def _converter_options(self, options: ConvertOptions) -> Dict[str, object]:
        return {
            "heading_style": ATX if options.heading_style == "atx" else UNDERLINED,
            "bullets": options.bullet_marker,
            "escape_asterisks": False,
            "escape_underscores": False,
            "sub_symbol": "<sub>",
            "sup_symbol": "<sup>",
            "newline_style": "spaces",
        }

    def to_markdown(self, html: str, options: Optional[ConvertOptions] = None) -> str:
        """Convert *html* and post-process, without metrics."""
        options = options or ConvertOptions()
        converter = PageMarkdownConverter(link_style=options.link_style, **self._converter_options(options))
        markdown = converter.convert(preprocess_html(html))
        if converter.references:
            markdown = markdown.rstrip("\n") + "\n\n" + converter.reference_block()
        return postprocess_markdown(markdown)

    def convert(self, html: str, options: Optional[ConvertOptions] = None) -> ConversionResult:
        """Convert *html* to Markdown and score the result.

        Raises:
            ConversionError: The transducer failed on this document.
        """
        started = time.perf_counter()
        try:
            markdown = self.to_markdown(html, options)
        except Exception as exc:
            raise ConversionError(f"Markdown conversion failed: {exc}") from exc

        result = ConversionResult(
            markdown=markdown,
            metrics=markdown_metrics(markdown),
            quality=quality(markdown, html),
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )
        logger.debug(
            "Converted %d chars of HTML to %d chars of Markdown in %dms",
            len(html or ""),
            len(markdown),
            result.processing_time_ms,
        )
        return result

    def to_text(self, html: str) -> str:
        """Plain-text conversion, the fallback output format."""
        try:
            return html_to_text(html)
        except Exception as exc:
            raise ConversionError(f"Text conversion failed: {exc}") from exc
