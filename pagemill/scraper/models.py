"""Data models for the fetch → extract → convert pipeline.

Plain dataclasses; ``to_dict()`` renders the camelCase field names that API
and downstream consumers depend on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FetchResult:
    """The rendered page (or its detected content root) for one navigation."""

    url: str
    final_url: str
    html: str
    title: str
    description: str
    canonical_url: Optional[str]
    language: Optional[str]
    http_status: int
    response_time_ms: int
    user_agent: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "finalUrl": self.final_url,
            "title": self.title,
            "description": self.description,
            "canonicalUrl": self.canonical_url,
            "language": self.language,
            "httpStatus": self.http_status,
            "responseTimeMs": self.response_time_ms,
        }


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Heading:
    level: int
    text: str
    id: Optional[str] = None


@dataclass(frozen=True)
class Link:
    text: str
    url: str
    title: Optional[str] = None


@dataclass(frozen=True)
class Image:
    src: str
    alt: str = ""
    title: Optional[str] = None


@dataclass(frozen=True)
class ListBlock:
    type: str  # "ul" | "ol"
    items: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ContentMetrics:
    char_count: int = 0
    word_count: int = 0
    paragraph_count: int = 0
    heading_count: int = 0
    link_count: int = 0
    image_count: int = 0
    list_count: int = 0
    estimated_reading_time_min: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "charCount": self.char_count,
            "wordCount": self.word_count,
            "paragraphCount": self.paragraph_count,
            "headingCount": self.heading_count,
            "linkCount": self.link_count,
            "imageCount": self.image_count,
            "listCount": self.list_count,
            "estimatedReadingTimeMin": self.estimated_reading_time_min,
        }


@dataclass(frozen=True)
class ExtractedContent:
    """Cleaned main-content HTML plus the structure derived from it."""

    html: str
    text: str
    headings: List[Heading] = field(default_factory=list)
    links: List[Link] = field(default_factory=list)
    images: List[Image] = field(default_factory=list)
    lists: List[ListBlock] = field(default_factory=list)
    metrics: ContentMetrics = field(default_factory=ContentMetrics)

    def structure_dict(self) -> Dict[str, Any]:
        return {
            "headings": [{"level": h.level, "text": h.text, "id": h.id} for h in self.headings],
            "links": [{"text": l.text, "url": l.url, "title": l.title} for l in self.links],
            "images": [{"src": i.src, "alt": i.alt, "title": i.title} for i in self.images],
            "lists": [{"type": b.type, "items": list(b.items)} for b in self.lists],
        }


# ---------------------------------------------------------------------------
# Converter
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MarkdownMetrics:
    total_lines: int = 0
    non_empty_lines: int = 0
    word_count: int = 0
    char_count: int = 0
    heading_count: int = 0
    link_count: int = 0
    image_count: int = 0
    code_block_count: int = 0
    inline_code_count: int = 0
    table_count: int = 0
    blockquote_count: int = 0
    list_item_count: int = 0
    ordered_list_item_count: int = 0
    estimated_reading_time_min: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalLines": self.total_lines,
            "nonEmptyLines": self.non_empty_lines,
            "wordCount": self.word_count,
            "characterCount": self.char_count,
            "headingCount": self.heading_count,
            "linkCount": self.link_count,
            "imageCount": self.image_count,
            "codeBlockCount": self.code_block_count,
            "inlineCodeCount": self.inline_code_count,
            "tableCount": self.table_count,
            "blockquoteCount": self.blockquote_count,
            "listItemCount": self.list_item_count,
            "orderedListItemCount": self.ordered_list_item_count,
            "estimatedReadingTimeMin": self.estimated_reading_time_min,
        }


@dataclass(frozen=True)
class QualityScore:
    content_preservation_ratio: float = 0.0
    structure_score: float = 0.0
    quality_score: float = 0.0
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentPreservationRatio": self.content_preservation_ratio,
            "structureScore": self.structure_score,
            "qualityScore": self.quality_score,
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class ConversionResult:
    markdown: str
    metrics: MarkdownMetrics
    quality: QualityScore
    processing_time_ms: int = 0


# ---------------------------------------------------------------------------
# Link discovery
# ---------------------------------------------------------------------------

LINK_CATEGORIES = ("internal", "external", "email", "phone", "file", "anchor")


@dataclass
class DiscoveredLink:
    original_href: str
    resolved_url: str
    title: str
    text: str
    category: str
    domain: Optional[str]
    source: str = "a"
    rel: Optional[str] = None
    target: Optional[str] = None
    position: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalHref": self.original_href,
            "resolvedUrl": self.resolved_url,
            "title": self.title,
            "text": self.text,
            "category": self.category,
            "domain": self.domain,
            "source": self.source,
            "rel": self.rel,
            "target": self.target,
            "position": self.position,
        }


@dataclass
class LinkStats:
    internal: int = 0
    external: int = 0
    email: int = 0
    phone: int = 0
    file: int = 0
    anchor: int = 0
    total: int = 0
    unique_domains: int = 0
    by_extension: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "internal": self.internal,
            "external": self.external,
            "email": self.email,
            "phone": self.phone,
            "file": self.file,
            "anchor": self.anchor,
            "total": self.total,
            "uniqueDomains": self.unique_domains,
            "byType": dict(self.by_extension),
        }


@dataclass
class LinkDiscoveryResult:
    links: List[DiscoveredLink] = field(default_factory=list)
    categories: Dict[str, List[DiscoveredLink]] = field(default_factory=dict)
    stats: LinkStats = field(default_factory=LinkStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "links": [link.to_dict() for link in self.links],
            "categories": {
                name: [link.to_dict() for link in members]
                for name, members in self.categories.items()
            },
            "stats": self.stats.to_dict(),
        }
