"""Service health endpoint.

Routes
------
GET /health    Pipeline statistics plus fetcher and cache health
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("")
def health(request: Request) -> dict[str, Any]:
    return request.app.state.pipeline.health()
