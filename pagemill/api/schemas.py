"""Request bodies shared by several routers, plus the response envelope.

Bodies accept camelCase keys (``waitUntil``) as well as snake_case.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pagemill.config import (
    BatchOptions,
    ConvertOptions,
    DiscoverOptions,
    ExtractOptions,
    FetchOptions,
    PipelineOptions,
)
from pagemill.errors import ConfigError, utc_timestamp
from pagemill.pipeline.service import PipelineResult

MAX_BATCH_URLS = 100


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

class RequestOptions(_CamelModel):
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "domcontentloaded"
    timeout: Optional[int] = Field(default=None, gt=0)
    wait_for_selector: Optional[str] = None
    ignore_tls_errors: bool = False
    remove_selectors: List[str] = Field(default_factory=list)
    content_selectors: Optional[List[str]] = None
    heading_style: Literal["atx", "setext"] = "atx"
    bullet_marker: Literal["-", "*", "+"] = "-"
    link_style: Literal["inlined", "referenced"] = "inlined"
    include_images: bool = False
    remove_duplicates: bool = False
    skip_cache: bool = False

    def to_pipeline_options(self) -> PipelineOptions:
        try:
            return PipelineOptions(
                fetch=FetchOptions(
                    wait_until=self.wait_until,
                    timeout_ms=self.timeout,
                    wait_for_selector=self.wait_for_selector,
                    ignore_tls_errors=self.ignore_tls_errors,
                ),
                extract=ExtractOptions(
                    remove_selectors=tuple(self.remove_selectors),
                    content_selectors=tuple(self.content_selectors) if self.content_selectors else None,
                ),
                convert=ConvertOptions(
                    heading_style=self.heading_style,
                    bullet_marker=self.bullet_marker,
                    link_style=self.link_style,
                ),
                discover=DiscoverOptions(
                    include_images=self.include_images,
                    remove_duplicates=self.remove_duplicates,
                ),
                skip_cache=self.skip_cache,
            )
        except ConfigError as exc:
            raise HTTPException(status_code=422, detail=exc.message) from exc


class BatchRequestOptions(RequestOptions):
    max_concurrent: Optional[int] = Field(default=None, ge=1, le=10)
    chunk_size: Optional[int] = Field(default=None, ge=1, le=100)
    request_delay_ms: Optional[int] = Field(default=None, ge=0)
    chunk_delay_ms: Optional[int] = Field(default=None, ge=0)
    max_retries: Optional[int] = Field(default=None, ge=0)

    def to_batch_options(self, mode: str) -> BatchOptions:
        try:
            return BatchOptions(
                max_concurrent=self.max_concurrent,
                chunk_size=self.chunk_size,
                request_delay_ms=self.request_delay_ms,
                chunk_delay_ms=self.chunk_delay_ms,
                max_retries=self.max_retries,
                mode=mode,
                per_url_options=self.to_pipeline_options(),
            )
        except ConfigError as exc:
            raise HTTPException(status_code=422, detail=exc.message) from exc


# ---------------------------------------------------------------------------
# Bodies
# ---------------------------------------------------------------------------

class UrlRequest(_CamelModel):
    url: str = Field(min_length=1)
    options: RequestOptions = Field(default_factory=RequestOptions)


class BatchRequest(_CamelModel):
    urls: List[str] = Field(min_length=1, max_length=MAX_BATCH_URLS)
    options: BatchRequestOptions = Field(default_factory=BatchRequestOptions)


class TrackedBatchRequest(BatchRequest):
    user_id: str = "anonymous"
    source_url: Optional[str] = None
    session_name: Optional[str] = None


class RetryRequest(_CamelModel):
    user_id: str = "anonymous"
    session_id: Optional[str] = None
    error_code: Optional[str] = None
    mode: Literal["convert", "discover"] = "discover"
    options: BatchRequestOptions = Field(default_factory=BatchRequestOptions)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def ok(data: Any, request_id: Optional[str] = None, **meta: Any) -> Dict[str, Any]:
    """``{success: true, data, meta}`` for a successful response."""
    return {
        "success": True,
        "data": data,
        "meta": {"requestId": request_id, "timestamp": utc_timestamp(), **meta},
    }


def pipeline_response(result: PipelineResult) -> JSONResponse:
    """Render a :class:`PipelineResult`; failures become HTTP 400."""
    meta = {
        "requestId": result.request_id,
        "processingTimeMs": result.processing_time_ms,
        "timestamp": result.timestamp,
    }
    if result.success:
        meta["fromCache"] = result.from_cache
        return JSONResponse({"success": True, "data": result.data, "meta": meta})
    return JSONResponse({"success": False, "error": result.error, "meta": meta}, status_code=400)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def enforce_rate_limit(request: Request) -> None:
    """Sliding-window limit per client address; raises HTTP 429 when exceeded."""
    client = request.client.host if request.client else "unknown"
    status = request.app.state.pipeline.cache.check_rate_limit(f"ip:{client}")
    if status.is_limited:
        raise HTTPException(
            status_code=429,
            detail={
                "message": "Too many requests",
                "errorType": "RATE_LIMIT",
                **status.to_dict(),
            },
            headers={"Retry-After": str(status.retry_after_seconds)},
        )
