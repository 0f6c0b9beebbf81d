"""
Payment provider webhooks.

Chargebee expects a 2xx for anything it should not retry, so unresolvable
events are acknowledged and only unexpected failures return 500.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tokenchat.api.dependencies import Webhooks
from tokenchat.api.middleware.exception_handlers import WebhookError
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils import metrics
from tokenchat.utils.logger import logger

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/chargebee", summary="Chargebee payment events")
async def chargebee_webhook(request: Request, webhooks: Webhooks) -> JSONResponse:
    try:
        webhooks.verify_basic_auth(request.headers.get("Authorization"))
    except WebhookError:
        metrics.webhook_events_total.labels(outcome="unauthorized").inc()
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    try:
        await webhooks.handle_event(body)
    except WebhookError as e:
        if e.code != ErrorCode.WEBHOOK_PAYLOAD_INVALID:
            raise
        return JSONResponse(status_code=400, content={"error": e.message})
    except Exception as e:
        metrics.webhook_events_total.labels(outcome="error").inc()
        logger.error(f"Webhook processing failed: {e}", event_id=body.get("id"), exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return JSONResponse(status_code=200, content={"status": "ok"})
