"""Receiver for events pushed by the custody platform."""

import json
import logging

from fastapi import APIRouter, HTTPException, Request

from custody_policy.config import settings
from custody_policy.metrics import WEBHOOK_EVENTS_TOTAL
from custody_policy.services.webhooks import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    normalize_event,
    verify_webhook_signature,
)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/custody")
async def receive_custody_event(
    request: Request,
    include_metadata: bool = True,
    include_raw_data: bool = False,
):
    """Verify the signature (when a secret is configured) and normalize the event."""
    raw = await request.body()

    if settings.webhook_secret:
        ok = verify_webhook_signature(
            settings.webhook_secret,
            request.headers.get(TIMESTAMP_HEADER),
            raw,
            request.headers.get(SIGNATURE_HEADER),
        )
        if not ok:
            WEBHOOK_EVENTS_TOTAL.labels(result="rejected").inc()
            logger.warning("Webhook rejected: invalid signature")
            raise HTTPException(401, "Invalid signature")

    try:
        body = json.loads(raw or b"{}")
    except json.JSONDecodeError:
        WEBHOOK_EVENTS_TOTAL.labels(result="rejected").inc()
        raise HTTPException(400, "Body must be JSON")
    if not isinstance(body, dict):
        WEBHOOK_EVENTS_TOTAL.labels(result="rejected").inc()
        raise HTTPException(400, "Body must be a JSON object")

    event = normalize_event(body, include_metadata, include_raw_data)
    WEBHOOK_EVENTS_TOTAL.labels(result="accepted").inc()
    logger.info("Webhook accepted: %s", event["event"], extra={"event": event["event"]})
    return {"received": True, **event}
