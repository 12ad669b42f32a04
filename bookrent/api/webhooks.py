# /bookrent/api/webhooks.py
"""Gateway webhooks.

Each delivery is recorded as a gateway event before it is applied. Once
recorded it is acknowledged with 200 whatever the outcome, so the gateway
stops retrying; failures are kept on the event row and in the logs.
"""

import hmac
import json
import logging
from typing import Any, Dict

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import GATEWAY_WEBHOOK_SECRET, STRIPE_WEBHOOK_SECRET
from bookrent.core.database import get_db
from bookrent.services import reconciler
from bookrent.services.errors import ReconciliationFault, UnknownTransaction
from bookrent.services.gateway import (
    gateway_logger,
    notification_from_listener,
    notification_from_stripe_event,
)

logger = logging.getLogger("bookrent.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _apply(db: AsyncSession, notification, source: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        result = await reconciler.process_notification(db, notification, source=source, payload=payload)
    except UnknownTransaction as e:
        logger.warning("Webhook from %s for unknown reference %s", source, e.reference)
        return {"received": True, "status": "unknown_transaction"}
    except ReconciliationFault as e:
        logger.error("Webhook from %s could not be applied: %s", source, e.message)
        return {"received": True, "status": "failed"}
    return {"received": True, "status": "applied" if result.applied else "ignored"}


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Checkout session outcomes from Stripe."""
    if not STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=400, detail="Stripe webhook not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        event = stripe.Webhook.construct_event(
            payload=payload, sig_header=sig_header, secret=STRIPE_WEBHOOK_SECRET
        )
    except (ValueError, stripe.SignatureVerificationError) as exc:
        gateway_logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail=f"Invalid webhook: {exc}")

    body = json.loads(payload)
    notification = notification_from_stripe_event(body)
    if notification is None:
        await reconciler.record_event(db, "stripe", None, payload={"type": event["type"], "id": event["id"]})
        return {"received": True, "status": "ignored"}

    gateway_logger.info("Stripe %s for %s", event["type"], notification.reference)
    return await _apply(db, notification, "stripe", body)


@router.post("/gateway")
async def listener_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Listener-style notifications ``{entityId, state, eventTimestamp}``."""
    if not GATEWAY_WEBHOOK_SECRET:
        raise HTTPException(status_code=400, detail="Gateway webhook not configured")
    provided = request.headers.get("x-webhook-secret") or ""
    if not hmac.compare_digest(provided, GATEWAY_WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    try:
        body = await request.json()
        notification = notification_from_listener(body)
    except ValueError as exc:
        gateway_logger.warning("Rejected gateway webhook: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))

    gateway_logger.info("Gateway %s for %s", notification.final_state, notification.reference)
    return await _apply(db, notification, "listener", body)
