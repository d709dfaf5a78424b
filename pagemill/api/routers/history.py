"""Extraction-history endpoints.

Routes
------
GET  /history/sessions              ?userId=&limit=&offset=&status=
GET  /history/sessions/{id}         Session plus its URL records
GET  /history/retryable             ?userId=&sessionId=&errorCode=
POST /history/retry                 Body: {"userId": "...", "sessionId": "...", ...}
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from pagemill.api.schemas import RetryRequest, ok

router = APIRouter()


@router.get("/sessions")
def list_sessions(
    request: Request,
    user_id: str = Query("anonymous", alias="userId"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[str] = None,
) -> dict[str, Any]:
    sessions = request.app.state.history.list_sessions(
        user_id, limit=limit, offset=offset, status=status
    )
    return ok({"sessions": [s.to_dict() for s in sessions], "limit": limit, "offset": offset})


@router.get("/sessions/{session_id}")
def get_session(
    session_id: str,
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
) -> dict[str, Any]:
    history = request.app.state.history
    session = history.get_session(session_id, user_id=user_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id!r} not found")
    records = history.list_session_records(session_id)
    return ok({"session": session.to_dict(), "records": [r.to_dict() for r in records]})


@router.get("/retryable")
def list_retryable(
    request: Request,
    user_id: str = Query("anonymous", alias="userId"),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    error_code: Optional[str] = Query(None, alias="errorCode"),
) -> dict[str, Any]:
    settings = request.app.state.settings
    records = request.app.state.history.list_retryable_urls(
        user_id,
        session_id=session_id,
        error_code=error_code,
        min_retry_interval_ms=settings.retry_min_interval_ms,
    )
    return ok({"records": [r.to_dict() for r in records], "count": len(records)})


@router.post("/retry")
async def retry(body: RetryRequest, request: Request) -> dict[str, Any]:
    """Re-run retryable failed URLs as a new tracked session."""
    orchestrator = request.app.state.orchestrator
    result = await orchestrator.retry_failed(
        body.user_id,
        session_id=body.session_id,
        error_code=body.error_code,
        options=body.options.to_batch_options(body.mode),
    )
    return ok(result.to_dict(), result.request_id, processingTimeMs=result.processing_time_ms)
