"""Calendar webhook endpoint.

POST /webhooks/recall-calendar-updates receives provider calendar
notifications and hands them to ``route_calendar_webhook``. GET on the same
path answers the provider's liveness probe.

Malformed bodies get a 400. Everything else returns 200, including
processing errors, so the provider does not retry: the periodic sync
covers anything a failed webhook would have triggered.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.botsync.calendars.webhooks import CalendarWebhookBody, route_calendar_webhook
from src.botsync.config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["webhooks"])

CALENDAR_WEBHOOK_PATH = "/webhooks/recall-calendar-updates"


@router.get(CALENDAR_WEBHOOK_PATH)
async def calendar_webhook_probe() -> dict:
    """Liveness probe used by the provider when the webhook URL is registered."""
    return {"status": "ok"}


@router.post(CALENDAR_WEBHOOK_PATH)
async def receive_calendar_webhook(request: Request):
    """Provider calendar webhook receiver.

    NOTE: No user auth -- the provider calls this directly. When
    RECALL_WEBHOOK_TOKEN is set, the X-Recall-Token header must match.
    """
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": "error", "detail": "Body must be JSON"},
        )

    try:
        body = CalendarWebhookBody.model_validate(payload)
    except ValidationError as exc:
        logger.warning("calendar_webhook.invalid_body", errors=exc.error_count())
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": "error", "detail": "Expected {event, data.calendar_id}"},
        )

    settings = getattr(request.app.state, "settings", None) or get_settings()
    if settings.RECALL_WEBHOOK_TOKEN:
        if request.headers.get("X-Recall-Token", "") != settings.RECALL_WEBHOOK_TOKEN:
            logger.warning(
                "calendar_webhook.invalid_token",
                webhook_event=body.event,
                remote_calendar_id=body.data.calendar_id,
            )
            # Still return 200 to prevent retries
            return {"status": "ok"}

    try:
        result = await route_calendar_webhook(
            request.app.state.calendar_repository,
            request.app.state.job_queue,
            body,
            raw_payload=payload,
            lookback_hours=settings.SYNC_LOOKBACK_HOURS,
        )
    except Exception:
        logger.warning(
            "calendar_webhook.handler_error",
            webhook_event=body.event,
            remote_calendar_id=body.data.calendar_id,
            exc_info=True,
        )
        return {"status": "ok"}

    return {"status": "ok", "accepted": result.accepted}
