"""
Health check endpoint (v1).
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Request

from tokenchat.api.dependencies import DB, AppSettings
from tokenchat.models.api_models import HealthResponse
from tokenchat.utils.db_utils import check_pool_health

router = APIRouter()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Database pool health, WebSocket statistics and streaming turn count.",
    tags=["Health"],
)
async def health_check(db: DB, request: Request, settings: AppSettings) -> HealthResponse:
    db_health = await check_pool_health(db)

    ws_manager = getattr(request.app.state, "ws_manager", None)
    ws_stats = ws_manager.get_stats() if ws_manager else {"error": "not initialized"}

    active_streams = getattr(request.app.state, "active_streams", None)

    return HealthResponse(
        status="healthy" if db_health.get("healthy") else "degraded",
        version=settings.app_version,
        timestamp=datetime.now(UTC).isoformat(),
        database=db_health,
        websocket=ws_stats,
        active_streams=len(active_streams) if active_streams is not None else 0,
        llm_provider=settings.llm_provider,
    )
