"""Link discovery: every hyperlink on a page, resolved and categorised."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from pagemill.config import DiscoverOptions
from pagemill.scraper.models import (
    LINK_CATEGORIES,
    DiscoveredLink,
    LinkDiscoveryResult,
    LinkStats,
)

logger = logging.getLogger(__name__)

FILE_EXTENSIONS = frozenset(
    {
        "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
        "zip", "rar", "7z", "tar", "gz",
        "jpg", "jpeg", "png", "gif", "svg", "webp",
        "mp3", "mp4", "avi", "mov", "wmv",
        "txt", "csv", "json", "xml",
    }
)

_PASSTHROUGH_PREFIXES = ("#", "mailto:", "tel:", "javascript:")


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

def resolve_url(href: str, base_url: str) -> str:
    """Resolve *href* against *base_url*.

    Absolute http(s) URLs and ``#`` / ``mailto:`` / ``tel:`` / ``javascript:``
    hrefs are returned untouched; protocol-relative hrefs take the base
    scheme.
    """
    if href.startswith(("http://", "https://")):
        return href
    try:
        if href.startswith("//"):
            return f"{urlsplit(base_url).scheme or 'https'}:{href}"
        if href.startswith(_PASSTHROUGH_PREFIXES):
            return href
        return urljoin(base_url, href)
    except ValueError:
        logger.warning("Failed to resolve URL %r relative to %r", href, base_url)
        return href


def extract_domain(url: str) -> Optional[str]:
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return None
    return hostname.lower() if hostname else None


def file_extension(url: str) -> Optional[str]:
    """Lower-cased extension of the URL path's last dotted suffix (≤5 chars)."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return None
    last = path.rsplit("/", 1)[-1]
    if "." not in last:
        return None
    extension = last.rsplit(".", 1)[-1].lower()
    return extension if extension and len(extension) <= 5 else None


def categorize(url: str, base_domain: Optional[str]) -> str:
    """Category of a resolved *url*: anchor → email → phone → file → internal/external."""
    if url.startswith("#"):
        return "anchor"
    if url.startswith("mailto:"):
        return "email"
    if url.startswith("tel:"):
        return "phone"
    if file_extension(url) in FILE_EXTENSIONS:
        return "file"
    domain = extract_domain(url)
    if not domain:
        return "anchor"
    return "internal" if domain == base_domain else "external"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def _link_title(tag: Tag) -> Optional[str]:
    image = tag.find("img")
    return (
        tag.get("title")
        or tag.get("aria-label")
        or (image.get("alt") if image is not None else None)
        or tag.get_text().strip()
        or None
    )


def _attr(tag: Tag, name: str) -> Optional[str]:
    value = tag.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return value or None


class LinkDiscoverer:
    """Extracts, resolves, categorises and counts links in rendered HTML."""

    def discover(
        self, html: str, base_url: str, options: Optional[DiscoverOptions] = None
    ) -> LinkDiscoveryResult:
        options = options or DiscoverOptions()
        links = self.extract_links(html, base_url, options.include_images)
        if options.remove_duplicates:
            links = self.remove_duplicates(links)
        result = self.summarise(links)
        logger.debug("Discovered %d links on %s", result.stats.total, base_url)
        return result

    def extract_links(self, html: str, base_url: str, include_images: bool = False) -> List[DiscoveredLink]:
        soup = BeautifulSoup(html or "", "html.parser")
        base_domain = extract_domain(base_url)
        seen = set()
        links: List[DiscoveredLink] = []

        def add(href: str, title: Optional[str], text: str, source: str, tag: Tag) -> None:
            href = href.strip()
            if not href or href in seen:
                return
            seen.add(href)
            resolved = resolve_url(href, base_url)
            links.append(
                DiscoveredLink(
                    original_href=href,
                    resolved_url=resolved,
                    title=title or text or href,
                    text=text,
                    category=categorize(resolved, base_domain),
                    domain=extract_domain(resolved),
                    source=source,
                    rel=_attr(tag, "rel"),
                    target=_attr(tag, "target"),
                    position=len(links) + 1,
                )
            )

        for tag in soup.find_all("a", href=True):
            add(tag["href"], _link_title(tag), tag.get_text().strip(), "a", tag)

        for tag in soup.find_all("area", href=True):
            alt = tag.get("alt") or ""
            add(tag["href"], tag.get("title") or alt or None, alt, "area", tag)

        if include_images:
            for tag in soup.find_all("img", src=True):
                alt = tag.get("alt") or ""
                add(tag["src"], tag.get("title") or alt or None, alt, "img", tag)

        return links

    def remove_duplicates(self, links: Iterable[DiscoveredLink]) -> List[DiscoveredLink]:
        """Keep one link per resolved URL: the one with the longest title."""
        best: Dict[str, DiscoveredLink] = {}
        for link in links:
            current = best.get(link.resolved_url)
            if current is None or len(current.title) < len(link.title):
                best[link.resolved_url] = link
        return list(best.values())

    def summarise(self, links: List[DiscoveredLink]) -> LinkDiscoveryResult:
        categories: Dict[str, List[DiscoveredLink]] = {name: [] for name in LINK_CATEGORIES}
        stats = LinkStats(total=len(links))
        domains = set()

        for link in links:
            categories[link.category].append(link)
            setattr(stats, link.category, getattr(stats, link.category) + 1)
            if link.domain:
                domains.add(link.domain)
            if link.category == "file":
                extension = file_extension(link.resolved_url)
                if extension:
                    stats.by_extension[extension] = stats.by_extension.get(extension, 0) + 1

        stats.unique_domains = len(domains)
        return LinkDiscoveryResult(links=links, categories=categories, stats=stats)
