"""Single-URL pipeline: validate → cache → fetch → extract → convert → cache.

:class:`Pipeline` owns explicitly injected services; nothing here reaches
for module-level singletons.  Every entry point returns a
:class:`PipelineResult` and never raises, except that ``BrowserUnavailable``
is re-raised when the caller passes ``raise_fatal=True``.
"""

from __future__ import annotations

import copy
import logging
import random
import string
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from pagemill.cache.service import CacheService, variant_key
from pagemill.config import (
    BULLET_MARKERS,
    HEADING_STYLES,
    LINK_STYLES,
    WAIT_UNTIL_EVENTS,
    PipelineOptions,
    Settings,
)
from pagemill.errors import (
    BrowserUnavailable,
    PagemillError,
    error_type_of,
    utc_timestamp,
)
from pagemill.scraper.converter import MarkdownConverterService
from pagemill.scraper.extractor import ContentExtractor
from pagemill.scraper.fetcher import BrowserFetcher
from pagemill.scraper.links import LinkDiscoverer
from pagemill.scraper.models import ConversionResult, ExtractedContent, FetchResult
from pagemill.scraper.validator import ValidationResult, check_url, validate_url

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_request_id(prefix: str = "req") -> str:
    """``<prefix>_<epoch ms>_<7 random base-36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _cached_copy(cached: Any, request_id: str) -> Any:
    """Deep copy of a cached payload, stamped with the current request id."""
    data = copy.deepcopy(cached)
    processing = data.get("processing") if isinstance(data, dict) else None
    if isinstance(processing, dict):
        processing["requestId"] = request_id
    return data


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class PipelineResult:
    success: bool
    request_id: str
    processing_time_ms: int = 0
    data: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    from_cache: bool = False
    timestamp: str = field(default_factory=utc_timestamp)

    @property
    def error_type(self) -> Optional[str]:
        return self.error["type"] if self.error else None

    @property
    def error_message(self) -> Optional[str]:
        return self.error["message"] if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.success:
            payload["data"] = self.data
        else:
            payload["error"] = self.error
        payload.update(
            requestId=self.request_id,
            processingTimeMs=self.processing_time_ms,
            fromCache=self.from_cache,
            timestamp=self.timestamp,
        )
        return payload


@dataclass
class PipelineStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_links_discovered: int = 0
    average_processing_time_ms: float = 0.0

    def record(self, success: bool, processing_time_ms: int) -> None:
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        completed = self.successful_requests + self.failed_requests
        self.average_processing_time_ms = (
            self.average_processing_time_ms * (completed - 1) + processing_time_ms
        ) / completed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "successfulRequests": self.successful_requests,
            "failedRequests": self.failed_requests,
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "totalLinksDiscovered": self.total_links_discovered,
            "averageProcessingTimeMs": round(self.average_processing_time_ms, 2),
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class Pipeline:
    """The fetch → extract → convert → cache pipeline and link discovery.

    Args:
        settings: Runtime configuration.
        fetcher: Page fetcher; a :class:`BrowserFetcher` is built when omitted.
        extractor: Main-content extractor.
        converter: HTML → Markdown converter.
        cache: Content/metadata cache.
        link_discoverer: Link extraction and categorisation.
    """

    def __init__(
        self,
        settings: Settings,
        fetcher: Optional[Any] = None,
        extractor: Optional[ContentExtractor] = None,
        converter: Optional[MarkdownConverterService] = None,
        cache: Optional[CacheService] = None,
        link_discoverer: Optional[LinkDiscoverer] = None,
    ) -> None:
        self.settings = settings
        self.fetcher = fetcher if fetcher is not None else BrowserFetcher(settings)
        self.extractor = extractor or ContentExtractor()
        self.converter = converter or MarkdownConverterService()
        self.cache = cache or CacheService(settings)
        self.link_discoverer = link_discoverer or LinkDiscoverer()
        self.stats = PipelineStats()
        self.discovery_stats = PipelineStats()
        self._started_at = time.time()

    async def close(self) -> None:
        """Stop the cache sweeper and close the browser."""
        self.cache.stop_sweeper()
        close = getattr(self.fetcher, "close", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Markdown conversion
    # ------------------------------------------------------------------
    async def convert_url(
        self,
        url: str,
        options: Optional[PipelineOptions] = None,
        raise_fatal: bool = False,
    ) -> PipelineResult:
        """Convert the main content of *url* to Markdown."""
        options = options or PipelineOptions()
        request_id = new_request_id("req")
        started = time.monotonic()
        self.stats.total_requests += 1

        try:
            url = validate_url(url)

            if not options.skip_cache:
                cached = self.cache.get_content(url, options.fetch)
                if cached is not None:
                    self.stats.cache_hits += 1
                    logger.info("[%s] Cache hit for %s", request_id, url)
                    return PipelineResult(
                        success=True,
                        request_id=request_id,
                        processing_time_ms=_elapsed_ms(started),
                        data=_cached_copy(cached, request_id),
                        from_cache=True,
                    )
                self.stats.cache_misses += 1

            logger.info("[%s] Fetching URL: %s", request_id, url)
            page = await self.fetcher.fetch(url, options.fetch)

            logger.info("[%s] Extracting content...", request_id)
            extract_started = time.monotonic()
            content = self.extractor.extract(page.html, options.extract)
            extraction_ms = _elapsed_ms(extract_started)

            logger.info("[%s] Converting to Markdown...", request_id)
            conversion = self.converter.convert(content.html, options.convert)

            processing_ms = _elapsed_ms(started)
            data = self._combine(page, content, conversion, request_id, processing_ms, extraction_ms)

            if not options.skip_cache:
                self.cache.cache_content(url, data, options.fetch)

            self.stats.record(True, processing_ms)
            logger.info("[%s] Conversion completed in %dms", request_id, processing_ms)
            return PipelineResult(
                success=True, request_id=request_id, processing_time_ms=processing_ms, data=data
            )
        except BrowserUnavailable as exc:
            result = self._failure(exc, url, request_id, started, self.stats)
            if raise_fatal:
                raise
            return result
        except Exception as exc:  # noqa: BLE001
            return self._failure(exc, url, request_id, started, self.stats)

    async def convert_url_to_text(
        self, url: str, options: Optional[PipelineOptions] = None
    ) -> PipelineResult:
        """Plain-text variant of :meth:`convert_url`, cached per URL and fetch/extract options."""
        options = options or PipelineOptions()
        request_id = new_request_id("req")
        started = time.monotonic()

        try:
            url = validate_url(url)
            cache_key = variant_key("text", url, options.fetch, extract=asdict(options.extract))
            if not options.skip_cache:
                cached = self.cache.get_metadata(cache_key)
                if cached is not None:
                    return PipelineResult(
                        success=True,
                        request_id=request_id,
                        processing_time_ms=_elapsed_ms(started),
                        data=_cached_copy(cached, request_id),
                        from_cache=True,
                    )

            page = await self.fetcher.fetch(url, options.fetch)
            content = self.extractor.extract(page.html, options.extract)
            text = self.converter.to_text(content.html)
            data = {
                "text": text,
                "title": page.title,
                "description": page.description,
                "url": page.url,
                "wordCount": len(text.split()),
                "characterCount": len(text),
            }
            if not options.skip_cache:
                self.cache.cache_metadata(cache_key, data, self.settings.cache_ttl_seconds)
            return PipelineResult(
                success=True,
                request_id=request_id,
                processing_time_ms=_elapsed_ms(started),
                data=data,
            )
        except Exception as exc:  # noqa: BLE001
            return self._failure(exc, url, request_id, started, None)

    # ------------------------------------------------------------------
    # Link discovery
    # ------------------------------------------------------------------
    async def discover_links(
        self,
        url: str,
        options: Optional[PipelineOptions] = None,
        raise_fatal: bool = False,
    ) -> PipelineResult:
        """Fetch *url* and categorise every link on it, cached per URL and fetch/discover options."""
        options = options or PipelineOptions()
        request_id = new_request_id("sitemap")
        started = time.monotonic()
        self.discovery_stats.total_requests += 1

        try:
            url = validate_url(url)
            cache_key = variant_key("sitemap", url, options.fetch, discover=asdict(options.discover))
            if not options.skip_cache:
                cached = self.cache.get_metadata(cache_key)
                if cached is not None:
                    self.discovery_stats.cache_hits += 1
                    return PipelineResult(
                        success=True,
                        request_id=request_id,
                        processing_time_ms=_elapsed_ms(started),
                        data=_cached_copy(cached, request_id),
                        from_cache=True,
                    )
                self.discovery_stats.cache_misses += 1

            logger.info("[%s] Discovering links on %s", request_id, url)
            page = await self.fetcher.fetch(url, options.fetch)
            base_url = page.final_url or page.url
            discovery = self.link_discoverer.discover(page.html, base_url, options.discover)
            processing_ms = _elapsed_ms(started)
            stats = discovery.stats
            data = {
                "url": page.url,
                "title": page.title,
                "description": page.description,
                "canonicalUrl": page.canonical_url or page.url,
                "links": [link.to_dict() for link in discovery.links],
                "summary": {
                    "totalLinks": stats.total,
                    "internalLinks": stats.internal,
                    "externalLinks": stats.external,
                    "emailLinks": stats.email,
                    "phoneLinks": stats.phone,
                    "fileLinks": stats.file,
                    "anchorLinks": stats.anchor,
                    "uniqueDomains": stats.unique_domains,
                    "linksByType": dict(stats.by_extension),
                },
                "categories": discovery.to_dict()["categories"],
                "processing": {
                    "requestId": request_id,
                    "processingTimeMs": processing_ms,
                    "fetchMs": page.response_time_ms,
                    "httpStatus": page.http_status,
                    "finalUrl": page.final_url,
                    "userAgent": page.user_agent,
                },
            }
            if not options.skip_cache:
                self.cache.cache_metadata(cache_key, data)

            self.discovery_stats.record(True, processing_ms)
            self.discovery_stats.total_links_discovered += stats.total
            logger.info("[%s] Found %d links in %dms", request_id, stats.total, processing_ms)
            return PipelineResult(
                success=True, request_id=request_id, processing_time_ms=processing_ms, data=data
            )
        except BrowserUnavailable as exc:
            result = self._failure(exc, url, request_id, started, self.discovery_stats)
            if raise_fatal:
                raise
            return result
        except Exception as exc:  # noqa: BLE001
            return self._failure(exc, url, request_id, started, self.discovery_stats)

    # ------------------------------------------------------------------
    # Operational surface
    # ------------------------------------------------------------------
    def validate_url(self, url: str) -> ValidationResult:
        return check_url(url)

    def clear_caches(self) -> Dict[str, int]:
        return self.cache.clear_all()

    def config_summary(self) -> Dict[str, Any]:
        summary = self.settings.summary()
        summary["conversion"] = {
            "headingStyles": list(HEADING_STYLES),
            "bulletMarkers": list(BULLET_MARKERS),
            "linkStyles": list(LINK_STYLES),
            "waitUntil": list(WAIT_UNTIL_EVENTS),
        }
        return summary

    def health(self) -> Dict[str, Any]:
        cache_health = self.cache.health()
        fetcher_health = self.fetcher.health() if hasattr(self.fetcher, "health") else {}
        return {
            "status": "healthy" if cache_health["status"] == "healthy" else "warning",
            "uptimeSeconds": int(time.time() - self._started_at),
            "stats": {
                "conversion": self.stats.to_dict(),
                "discovery": self.discovery_stats.to_dict(),
            },
            "services": {
                "fetcher": fetcher_health,
                "cache": cache_health,
            },
            "timestamp": utc_timestamp(),
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _combine(
        self,
        page: FetchResult,
        content: ExtractedContent,
        conversion: ConversionResult,
        request_id: str,
        processing_ms: int,
        extraction_ms: int,
    ) -> Dict[str, Any]:
        original_metrics = {"characterCount": len(page.html)}
        original_metrics.update(content.metrics.to_dict())
        return {
            "markdown": conversion.markdown,
            "title": page.title,
            "description": page.description,
            "url": page.url,
            "canonicalUrl": page.canonical_url or page.url,
            "language": page.language or "en",
            "content": content.structure_dict(),
            "metrics": {
                "original": original_metrics,
                "markdown": conversion.metrics.to_dict(),
                "quality": conversion.quality.to_dict(),
            },
            "processing": {
                "requestId": request_id,
                "processingTimeMs": processing_ms,
                "fetchMs": page.response_time_ms,
                "extractionMs": extraction_ms,
                "conversionMs": conversion.processing_time_ms,
                "httpStatus": page.http_status,
                "finalUrl": page.final_url,
                "userAgent": page.user_agent,
            },
        }

    def _failure(
        self,
        exc: Exception,
        url: str,
        request_id: str,
        started: float,
        stats: Optional[PipelineStats],
    ) -> PipelineResult:
        processing_ms = _elapsed_ms(started)
        if stats is not None:
            stats.record(False, processing_ms)
        if isinstance(exc, PagemillError):
            payload = exc.to_payload(url, request_id)
            logger.warning("[%s] Failed (%s): %s", request_id, exc.error_type, exc.message)
        else:
            logger.exception("[%s] Unexpected failure for %s", request_id, url)
            payload = {
                "type": error_type_of(exc),
                "message": str(exc) or exc.__class__.__name__,
                "url": url,
                "requestId": request_id,
                "timestamp": utc_timestamp(),
            }
        return PipelineResult(
            success=False,
            request_id=request_id,
            processing_time_ms=processing_ms,
            error=payload,
        )
