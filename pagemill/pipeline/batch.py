"""Batch orchestration over the single-URL pipeline.

URLs are split into chunks; inside a chunk up to ``max_concurrent`` pipeline
runs proceed at once, capped at the fetcher's page limit.  Their starts are
staggered by ``request_delay_ms`` and a ``chunk_delay_ms`` pause separates
chunks.  One URL's failure never affects the others; only
``BrowserUnavailable`` stops the remaining work.

The tracked variant mirrors every step into a :class:`HistoryStore`.  History
calls are retried with backoff and their failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pagemill.config import BatchOptions, Settings
from pagemill.errors import BrowserUnavailable, ConfigError, HistoryTrackingError, error_type_of
from pagemill.history.interface import HistoryStore
from pagemill.pipeline.retry import RetryPolicy, retry_with_backoff
from pagemill.pipeline.service import Pipeline, PipelineResult, new_request_id
from pagemill.scraper.validator import check_url

logger = logging.getLogger(__name__)

ITEM_STATUSES = ("pending", "processing", "succeeded", "failed")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class BatchItemResult:
    url: str
    index: int
    chunk_number: int
    position_in_chunk: int
    status: str = "pending"
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    record_id: Optional[str] = None
    processing_time_ms: int = 0
    from_cache: bool = False
    data: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def fail(self, error_type: str, message: str) -> None:
        self.status = "failed"
        self.error_type = error_type
        self.error_message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "index": self.index,
            "chunkNumber": self.chunk_number,
            "positionInChunk": self.position_in_chunk,
            "status": self.status,
            "success": self.succeeded,
            "errorType": self.error_type,
            "errorMessage": self.error_message,
            "recordId": self.record_id,
            "processingTimeMs": self.processing_time_ms,
            "fromCache": self.from_cache,
            "data": self.data,
        }


@dataclass
class BatchSummary:
    total: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0
    chunks_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "successRate": self.success_rate,
            "chunksProcessed": self.chunks_processed,
        }


@dataclass
class BatchResult:
    request_id: str
    results: List[BatchItemResult] = field(default_factory=list)
    summary: BatchSummary = field(default_factory=BatchSummary)
    processing_time_ms: int = 0
    session_id: Optional[str] = None

    @property
    def failed_items(self) -> List[BatchItemResult]:
        return [item for item in self.results if item.status == "failed"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "sessionId": self.session_id,
            "results": [item.to_dict() for item in self.results],
            "summary": self.summary.to_dict(),
            "processingTimeMs": self.processing_time_ms,
        }


@dataclass(frozen=True)
class RetryItem:
    url: str
    previous_error_type: Optional[str]
    previous_error_message: Optional[str]
    attempt: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "previousErrorType": self.previous_error_type,
            "previousErrorMessage": self.previous_error_message,
            "attempt": self.attempt,
        }


@dataclass(frozen=True)
class RetryBatch:
    urls: List[str]
    items: List[RetryItem]

    def to_dict(self) -> Dict[str, Any]:
        return {"urls": list(self.urls), "items": [item.to_dict() for item in self.items]}


# ---------------------------------------------------------------------------
# History tracking
# ---------------------------------------------------------------------------

class _SessionTracker:
    """Mirrors batch progress into a history store; never raises."""

    def __init__(
        self,
        history: HistoryStore,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[Any]],
    ) -> None:
        self.history = history
        self.policy = policy
        self.sleep = sleep
        self.session_id: Optional[str] = None

    async def call(self, description: str, fn: Callable[[], Any]) -> Any:
        try:
            return await retry_with_backoff(fn, self.policy, self.sleep, description)
        except Exception as exc:  # noqa: BLE001
            error = HistoryTrackingError(f"{description} failed: {exc}")
            logger.warning("[HISTORY] %s (ignored)", error.message)
            return None

    async def open_session(
        self,
        user_id: str,
        source_url: str,
        session_name: Optional[str],
        total_urls: int,
        options: BatchOptions,
    ) -> None:
        session = await self.call(
            "create_session",
            lambda: self.history.create_session(
                user_id,
                source_url,
                session_name=session_name,
                total_urls=total_urls,
                chunk_size=options.chunk_size,
                max_retries=options.max_retries,
            ),
        )
        self.session_id = session.id if session is not None else None

    async def chunk_started(self, chunk_number: int, items: List[BatchItemResult]) -> None:
        if self.session_id is None:
            return
        session_id = self.session_id
        records = await self.call(
            "create_url_records",
            lambda: self.history.create_url_records(
                session_id, [item.url for item in items], chunk_number
            ),
        )
        for item, record in zip(items, records or []):
            item.record_id = record.id

    async def item_started(self, item: BatchItemResult) -> None:
        if item.record_id is None:
            return
        record_id = item.record_id
        await self.call(
            "update_url_record",
            lambda: self.history.update_url_record(record_id, status="processing"),
        )

    async def item_finished(self, item: BatchItemResult) -> None:
        if item.record_id is None:
            return
        record_id = item.record_id
        fields: Dict[str, Any] = {
            "status": "success" if item.succeeded else "failed",
            "processing_time_ms": item.processing_time_ms,
        }
        if item.succeeded and item.data:
            processing = item.data.get("processing") or {}
            fields["http_status"] = processing.get("httpStatus")
            fields["title"] = item.data.get("title") or None
            fields["description"] = item.data.get("description") or None
            markdown = item.data.get("markdown")
            if markdown is not None:
                fields["size_bytes"] = len(markdown.encode("utf-8"))
        else:
            fields["error_code"] = item.error_type
            fields["error_message"] = item.error_message
        await self.call(
            "update_url_record",
            lambda: self.history.update_url_record(record_id, **fields),
        )

    async def close_session(self, summary: BatchSummary, processing_time_ms: int) -> None:
        if self.session_id is None:
            return
        session_id = self.session_id
        ok = summary.successful > 0
        await self.call(
            "update_session",
            lambda: self.history.update_session(
                session_id,
                status="completed" if ok else "failed",
                processing_time_ms=processing_time_ms,
                error_message=None if ok else "No URLs were processed successfully",
            ),
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class BatchOrchestrator:
    """Runs the pipeline over many URLs.

    Args:
        pipeline: The single-URL pipeline.
        settings: Supplies the default batch knobs.
        history: Optional history store for the tracked variants.
        sleep: Awaitable sleep, injectable so tests run without real delays.
        history_retry: Backoff policy for history-store calls.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        settings: Settings,
        history: Optional[HistoryStore] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        history_retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.pipeline = pipeline
        self.settings = settings
        self.history = history
        self._sleep = sleep
        self.history_retry = history_retry or RetryPolicy()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def run_batch(
        self, urls: Sequence[str], options: Optional[BatchOptions] = None
    ) -> BatchResult:
        """Process *urls* and return per-URL results plus an aggregate summary."""
        return await self._run(urls, (options or BatchOptions()).resolved(self.settings), None)

    def build_retry_batch(self, batch_result: BatchResult) -> RetryBatch:
        """Exactly the failed URLs of *batch_result*, with their last error."""
        items = [
            RetryItem(
                url=item.url,
                previous_error_type=item.error_type,
                previous_error_message=item.error_message,
            )
            for item in batch_result.failed_items
        ]
        return RetryBatch(urls=[item.url for item in items], items=items)

    async def run_tracked_batch(
        self,
        user_id: str,
        source_url: str,
        urls: Sequence[str],
        options: Optional[BatchOptions] = None,
        session_name: Optional[str] = None,
    ) -> BatchResult:
        """Like :meth:`run_batch`, recording a session and per-URL records."""
        resolved = (options or BatchOptions()).resolved(self.settings)
        tracker = None
        if self.history is not None:
            tracker = _SessionTracker(self.history, self.history_retry, self._sleep)
            await tracker.open_session(user_id, source_url, session_name, len(urls), resolved)
        else:
            logger.warning("[BATCH] No history store configured; running untracked")
        return await self._run(urls, resolved, tracker)

    async def retry_failed(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        error_code: Optional[str] = None,
        options: Optional[BatchOptions] = None,
    ) -> BatchResult:
        """Re-run every retryable failed URL as a new tracked session.

        Raises:
            ConfigError: If the orchestrator has no history store.
        """
        if self.history is None:
            raise ConfigError("retry_failed requires a history store")
        history = self.history
        tracker = _SessionTracker(history, self.history_retry, self._sleep)

        records = await tracker.call(
            "list_retryable_urls",
            lambda: history.list_retryable_urls(
                user_id,
                session_id=session_id,
                error_code=error_code,
                min_retry_interval_ms=self.settings.retry_min_interval_ms,
            ),
        ) or []
        if not records:
            logger.info("[BATCH] No retryable URLs for user %s", user_id)
            return BatchResult(request_id=new_request_id("batch"))

        await tracker.call("mark_retried", lambda: history.mark_retried([r.id for r in records]))

        origin = await tracker.call("get_session", lambda: history.get_session(records[0].session_id))
        source_url = origin.source_url if origin is not None else records[0].url
        logger.info("[BATCH] Retrying %d failed URLs from %s", len(records), source_url)
        return await self.run_tracked_batch(
            user_id,
            source_url,
            [r.url for r in records],
            options,
            session_name=f"Retry - {source_url}",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _run(
        self,
        urls: Sequence[str],
        options: BatchOptions,
        tracker: Optional[_SessionTracker],
    ) -> BatchResult:
        request_id = new_request_id("batch")
        started = time.monotonic()
        chunk_size = options.chunk_size
        items = [
            BatchItemResult(
                url=url,
                index=i,
                chunk_number=i // chunk_size + 1,
                position_in_chunk=i % chunk_size,
            )
            for i, url in enumerate(urls)
        ]
        chunks = [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]
        concurrency = min(options.max_concurrent, self.settings.max_concurrent_pages)
        if concurrency < options.max_concurrent:
            logger.warning(
                "[BATCH %s] max_concurrent %d exceeds the browser page cap; using %d",
                request_id, options.max_concurrent, concurrency,
            )
        semaphore = asyncio.Semaphore(concurrency)
        state: Dict[str, Optional[BrowserUnavailable]] = {"fatal": None}
        summary = BatchSummary(total=len(items))

        logger.info(
            "[BATCH %s] %d URLs in %d chunks (concurrency %d, mode %s)",
            request_id, len(items), len(chunks), concurrency, options.mode,
        )

        for number, chunk in enumerate(chunks, start=1):
            if state["fatal"] is not None:
                for item in chunk:
                    item.fail(state["fatal"].error_type, state["fatal"].message)
                continue

            if tracker is not None:
                await tracker.chunk_started(number, chunk)

            tasks = []
            for position, item in enumerate(chunk):
                tasks.append(asyncio.ensure_future(
                    self._process(item, options, semaphore, state, tracker)
                ))
                if position < len(chunk) - 1 and options.request_delay_ms:
                    await self._sleep(options.request_delay_ms / 1000)
            await asyncio.gather(*tasks)
            summary.chunks_processed += 1
            logger.info(
                "[BATCH %s] Chunk %d/%d done", request_id, number, len(chunks)
            )

            if number < len(chunks) and state["fatal"] is None and options.chunk_delay_ms:
                await self._sleep(options.chunk_delay_ms / 1000)

        summary.successful = sum(1 for item in items if item.succeeded)
        summary.failed = summary.total - summary.successful
        summary.success_rate = summary.successful / summary.total if summary.total else 0.0
        processing_ms = int((time.monotonic() - started) * 1000)

        if tracker is not None:
            await tracker.close_session(summary, processing_ms)

        logger.info(
            "[BATCH %s] Completed: %d/%d succeeded in %dms",
            request_id, summary.successful, summary.total, processing_ms,
        )
        return BatchResult(
            request_id=request_id,
            results=items,
            summary=summary,
            processing_time_ms=processing_ms,
            session_id=tracker.session_id if tracker is not None else None,
        )

    async def _process(
        self,
        item: BatchItemResult,
        options: BatchOptions,
        semaphore: asyncio.Semaphore,
        state: Dict[str, Optional[BrowserUnavailable]],
        tracker: Optional[_SessionTracker],
    ) -> None:
        validation = check_url(item.url)
        if not validation.valid:
            item.fail(validation.error_type or "VALIDATION_ERROR", validation.error or "Invalid URL")
            if tracker is not None:
                await tracker.item_finished(item)
            return

        async with semaphore:
            fatal = state["fatal"]
            if fatal is not None:
                item.fail(fatal.error_type, fatal.message)
                if tracker is not None:
                    await tracker.item_finished(item)
                return

            item.status = "processing"
            if tracker is not None:
                await tracker.item_started(item)

            started = time.monotonic()
            try:
                result = await self._run_one(item.url, options)
            except BrowserUnavailable as exc:
                logger.error("[BATCH] Browser unavailable; aborting remaining URLs: %s", exc.message)
                state["fatal"] = exc
                item.fail(exc.error_type, exc.message)
            except Exception as exc:  # noqa: BLE001
                logger.warning("[BATCH] %s failed unexpectedly: %s", item.url, exc)
                item.fail(error_type_of(exc), str(exc) or exc.__class__.__name__)
            else:
                item.from_cache = result.from_cache
                if result.success:
                    item.status = "succeeded"
                    item.data = result.data
                else:
                    item.fail(result.error_type or "UNKNOWN", result.error_message or "")
            item.processing_time_ms = int((time.monotonic() - started) * 1000)

            if tracker is not None:
                await tracker.item_finished(item)

    async def _run_one(self, url: str, options: BatchOptions) -> PipelineResult:
        if options.mode == "discover":
            return await self.pipeline.discover_links(url, options.per_url_options, raise_fatal=True)
        return await self.pipeline.convert_url(url, options.per_url_options, raise_fatal=True)
