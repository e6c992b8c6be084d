"""Realtime change webhook routes."""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from bedtime.config import settings
from bedtime.dependencies import get_feed
from bedtime.schemas.request import ChangeWebhook
from bedtime.services.change_feed import ChangeEvent
from bedtime.services.store import TABLE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


@router.post("/story_requests")
async def story_request_changed(
    data: ChangeWebhook,
    x_webhook_secret: Optional[str] = Header(default=None),
    feed=Depends(get_feed),
):
    """Receive a row change from the database and fan it out to trackers."""
    if settings.REALTIME_WEBHOOK_SECRET and not hmac.compare_digest(
        x_webhook_secret or "", settings.REALTIME_WEBHOOK_SECRET
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    if data.table != TABLE:
        raise HTTPException(status_code=400, detail=f"Unexpected table: {data.table}")

    try:
        change = ChangeEvent.from_webhook(data.model_dump(by_alias=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    delivered = feed.publish(change)
    logger.info(f"Realtime {change.event} on {change.table} delivered to {delivered} subscriber(s)")

    return {"delivered": delivered}
