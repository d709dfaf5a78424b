"""Markdown conversion endpoints.

Routes
------
POST /convert               Body: {"url": "...", "options": {...}}   → convert_url
POST /convert/text          Body: {"url": "...", "options": {...}}   → convert_url_to_text
POST /convert/batch         Body: {"urls": [...], "options": {...}}  → run_batch(mode=convert)
POST /convert/validate      Body: {"url": "..."}                     → validate_url
GET  /convert/config                                                 → config_summary
POST /convert/cache/clear                                            → clear_caches
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pagemill.api.schemas import BatchRequest, UrlRequest, ok, pipeline_response

logger = logging.getLogger(__name__)

router = APIRouter()


class ValidateRequest(BaseModel):
    url: str


@router.post("")
async def convert(body: UrlRequest, request: Request) -> JSONResponse:
    """Fetch a page, isolate its main content and return it as Markdown."""
    pipeline = request.app.state.pipeline
    result = await pipeline.convert_url(body.url, body.options.to_pipeline_options())
    return pipeline_response(result)


@router.post("/text")
async def convert_text(body: UrlRequest, request: Request) -> JSONResponse:
    pipeline = request.app.state.pipeline
    result = await pipeline.convert_url_to_text(body.url, body.options.to_pipeline_options())
    return pipeline_response(result)


@router.post("/batch")
async def convert_batch(body: BatchRequest, request: Request) -> dict[str, Any]:
    """Convert many URLs; per-URL failures are reported, never raised."""
    orchestrator = request.app.state.orchestrator
    logger.info("Batch converting %d URLs", len(body.urls))
    result = await orchestrator.run_batch(body.urls, body.options.to_batch_options("convert"))
    retry = orchestrator.build_retry_batch(result)
    data = result.to_dict()
    data["retryBatch"] = retry.to_dict() if retry.urls else None
    return ok(data, result.request_id, processingTimeMs=result.processing_time_ms)


@router.post("/validate")
def validate(body: ValidateRequest, request: Request) -> dict[str, Any]:
    validation = request.app.state.pipeline.validate_url(body.url)
    return ok(validation.to_dict())


@router.get("/config")
def config(request: Request) -> dict[str, Any]:
    return ok(request.app.state.pipeline.config_summary())


@router.post("/cache/clear")
def clear_cache(request: Request) -> dict[str, Any]:
    cleared = request.app.state.pipeline.clear_caches()
    return ok({"cleared": cleared})
