"""Link discovery endpoints.

Routes
------
POST /sitemap/discover   Body: {"url": "...", "options": {...}}          → discover_links
POST /sitemap/batch      Body: {"urls": [...], "userId": "...", ...}     → run_tracked_batch(mode=discover)
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from pagemill.api.schemas import TrackedBatchRequest, UrlRequest, ok, pipeline_response

router = APIRouter()


@router.post("/discover")
async def discover(body: UrlRequest, request: Request) -> JSONResponse:
    """Return every link on the page, categorised, with domain statistics."""
    result = await request.app.state.pipeline.discover_links(
        body.url, body.options.to_pipeline_options()
    )
    return pipeline_response(result)


@router.post("/batch")
async def discover_batch(body: TrackedBatchRequest, request: Request) -> dict[str, Any]:
    """Discover links on many URLs, recording the run as a history session."""
    orchestrator = request.app.state.orchestrator
    result = await orchestrator.run_tracked_batch(
        body.user_id,
        body.source_url or body.urls[0],
        body.urls,
        body.options.to_batch_options("discover"),
        session_name=body.session_name,
    )
    return ok(result.to_dict(), result.request_id, processingTimeMs=result.processing_time_ms)
