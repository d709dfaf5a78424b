"""Scraper package: validation, rendering, extraction, conversion and link discovery."""

from pagemill.scraper.converter import MarkdownConverterService
from pagemill.scraper.extractor import ContentExtractor, ReadabilityThresholds
from pagemill.scraper.fetcher import BrowserFetcher
from pagemill.scraper.links import LinkDiscoverer
from pagemill.scraper.models import (
    ConversionResult,
    DiscoveredLink,
    ExtractedContent,
    FetchResult,
    LinkDiscoveryResult,
)
from pagemill.scraper.validator import ValidationResult, check_url, validate_url

__all__ = [
    "BrowserFetcher",
    "ContentExtractor",
    "ReadabilityThresholds",
    "MarkdownConverterService",
    "LinkDiscoverer",
    "FetchResult",
    "ExtractedContent",
    "ConversionResult",
    "DiscoveredLink",
    "LinkDiscoveryResult",
    "ValidationResult",
    "validate_url",
    "check_url",
]
