# FILE: bookrent/services/gateway.py
"""Card gateway adapters.

``StripeGateway`` talks to Stripe Checkout. Security-deposit links are
created with ``capture_method="manual"`` so a completed checkout is a hold
that is later captured or cancelled. ``MockGateway`` stands in when
``TEST_MODE`` is on.
"""
from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe

from bookrent.core.config import APP_DOMAIN, LOG_DIR, STRIPE_SECRET_KEY, TEST_MODE
from bookrent.services.errors import GatewayError

os.makedirs(LOG_DIR, exist_ok=True)
gateway_logger = logging.getLogger("bookrent_gateway")
if not gateway_logger.handlers:
    handler = logging.FileHandler(os.path.join(LOG_DIR, "gateway.log"))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    handler.setFormatter(formatter)
    gateway_logger.setLevel(logging.INFO)
    gateway_logger.addHandler(handler)

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY

# Stripe only accepts checkout expiries between 30 minutes and 24 hours out
STRIPE_MIN_EXPIRY = timedelta(minutes=31)
STRIPE_MAX_EXPIRY = timedelta(hours=23, minutes=59)

COMPLETED = "completed"
FAILED = "failed"
EXPIRED = "expired"
FINAL_STATES = {COMPLETED, FAILED, EXPIRED}


@dataclass
class GatewayLink:
    url: str
    session_id: str
    expires_at: datetime
    transaction_id: Optional[str] = None


@dataclass
class GatewayNotification:
    """A terminal outcome reported by the gateway for one checkout."""
    reference: str
    final_state: str
    occurred_at: datetime
    transaction_id: Optional[str] = None
    external_event_id: Optional[str] = None


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _utc_naive(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


class CardGateway:
    name = "base"

    async def create_link(
        self,
        payment_id: str,
        booking_reference: str,
        description: str,
        amount: Decimal,
        currency: str,
        expires_at: datetime,
        authorize_only: bool = False,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayLink:
        raise NotImplementedError

    async def fetch_outcome(self, session_id: str) -> Optional[GatewayNotification]:
        """Terminal outcome of a checkout, or None while it is still open."""
        raise NotImplementedError

    async def capture(self, transaction_id: str, amount: Decimal, currency: str) -> None:
        raise NotImplementedError

    async def release(self, transaction_id: str) -> None:
        raise NotImplementedError


class StripeGateway(CardGateway):
    name = "stripe"

    def _require_key(self) -> None:
        if not stripe.api_key:
            raise GatewayError("Stripe is not configured")

    async def create_link(
        self,
        payment_id: str,
        booking_reference: str,
        description: str,
        amount: Decimal,
        currency: str,
        expires_at: datetime,
        authorize_only: bool = False,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayLink:
        self._require_key()

        now = datetime.utcnow()
        expires_at = min(max(expires_at, now + STRIPE_MIN_EXPIRY), now + STRIPE_MAX_EXPIRY)

        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": description},
                        "unit_amount": to_minor_units(amount),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{APP_DOMAIN}/payment-confirmation?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{APP_DOMAIN}/booking-form?payment_failed=true&payment_id={payment_id}",
            "client_reference_id": payment_id,
            "expires_at": int(expires_at.replace(tzinfo=timezone.utc).timestamp()),
            "metadata": {"payment_id": payment_id, "booking_reference": booking_reference, **(metadata or {})},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if authorize_only:
            params["payment_intent_data"] = {"capture_method": "manual"}

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            gateway_logger.error("Stripe session creation failed for payment %s", payment_id, exc_info=exc)
            raise GatewayError(exc.user_message or str(exc))

        gateway_logger.info(
            "Stripe session %s created for payment %s (%s %s, authorize_only=%s)",
            session.id, payment_id, amount, currency, authorize_only,
        )
        return GatewayLink(url=session.url, session_id=session.id, expires_at=expires_at)

    async def fetch_outcome(self, session_id: str) -> Optional[GatewayNotification]:
        self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as exc:
            gateway_logger.error("Stripe session lookup failed for %s", session_id, exc_info=exc)
            raise GatewayError(exc.user_message or str(exc))

        now = datetime.utcnow()
        if session.status == "complete":
            return GatewayNotification(
                reference=session.id,
                final_state=COMPLETED,
                occurred_at=now,
                transaction_id=session.payment_intent,
            )
        if session.status == "expired":
            return GatewayNotification(reference=session.id, final_state=EXPIRED, occurred_at=now)
        return None

    async def capture(self, transaction_id: str, amount: Decimal, currency: str) -> None:
        self._require_key()
        try:
            stripe.PaymentIntent.capture(transaction_id, amount_to_capture=to_minor_units(amount))
        except stripe.StripeError as exc:
            gateway_logger.error("Stripe capture failed for %s", transaction_id, exc_info=exc)
            raise GatewayError(exc.user_message or str(exc))
        gateway_logger.info("Captured %s %s on %s", amount, currency, transaction_id)

    async def release(self, transaction_id: str) -> None:
        self._require_key()
        try:
            stripe.PaymentIntent.cancel(transaction_id)
        except stripe.StripeError as exc:
            gateway_logger.error("Stripe release failed for %s", transaction_id, exc_info=exc)
            raise GatewayError(exc.user_message or str(exc))
        gateway_logger.info("Released hold %s", transaction_id)


class MockGateway(CardGateway):
    """Local stand-in: links point at the app itself, outcomes come from webhooks."""
    name = "mock"

    async def create_link(
        self,
        payment_id: str,
        booking_reference: str,
        description: str,
        amount: Decimal,
        currency: str,
        expires_at: datetime,
        authorize_only: bool = False,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayLink:
        session_id = f"mock_{uuid.uuid4().hex}"
        gateway_logger.info("Mock session %s for payment %s (%s %s)", session_id, payment_id, amount, currency)
        return GatewayLink(
            url=f"{APP_DOMAIN}/mock-checkout/{session_id}",
            session_id=session_id,
            expires_at=expires_at,
        )

    async def fetch_outcome(self, session_id: str) -> Optional[GatewayNotification]:
        return None

    async def capture(self, transaction_id: str, amount: Decimal, currency: str) -> None:
        gateway_logger.info("Mock capture %s %s on %s", amount, currency, transaction_id)

    async def release(self, transaction_id: str) -> None:
        gateway_logger.info("Mock release %s", transaction_id)


# ─────────────────────────────────────────────
# WEBHOOK TRANSLATION
# ─────────────────────────────────────────────

STRIPE_EVENT_STATES = {
    "checkout.session.completed": COMPLETED,
    "checkout.session.async_payment_succeeded": COMPLETED,
    "checkout.session.async_payment_failed": FAILED,
    "checkout.session.expired": EXPIRED,
}


def notification_from_stripe_event(event: Dict[str, Any]) -> Optional[GatewayNotification]:
    """Map a verified Stripe event; None for event types we do not act on."""
    state = STRIPE_EVENT_STATES.get(event.get("type"))
    if state is None:
        return None
    session = event["data"]["object"]
    created = event.get("created")
    occurred_at = _from_epoch(created) if created else datetime.utcnow()
    return GatewayNotification(
        reference=session.get("id"),
        final_state=state,
        occurred_at=occurred_at,
        transaction_id=session.get("payment_intent"),
        external_event_id=event.get("id"),
    )


LISTENER_STATES = {
    "COMPLETED": COMPLETED,
    "FULFILL": COMPLETED,
    "FAILED": FAILED,
    "DECLINE": FAILED,
    "VOIDED": FAILED,
    "EXPIRED": EXPIRED,
}


def notification_from_listener(payload: Dict[str, Any]) -> GatewayNotification:
    """Map a listener-shaped webhook body ``{entityId|session_id, state, eventTimestamp}``."""
    reference = payload.get("entityId") or payload.get("session_id")
    if reference is None or str(reference).strip() == "":
        raise ValueError("Missing entityId/session_id in webhook")
    raw_state = str(payload.get("state") or "").upper()
    state = LISTENER_STATES.get(raw_state)
    if state is None:
        raise ValueError(f"Unsupported webhook state: {payload.get('state')}")

    ts = payload.get("eventTimestamp")
    if isinstance(ts, (int, float)):
        # Milliseconds since epoch when large enough
        occurred_at = _from_epoch(ts / 1000 if ts > 1e11 else ts)
    elif ts:
        occurred_at = _utc_naive(datetime.fromisoformat(str(ts).replace("Z", "+00:00")))
    else:
        occurred_at = datetime.utcnow()

    return GatewayNotification(
        reference=str(reference),
        final_state=state,
        occurred_at=occurred_at,
        transaction_id=str(payload["transactionId"]) if payload.get("transactionId") else None,
        external_event_id=str(payload["listenerEntityId"]) if payload.get("listenerEntityId") else None,
    )


_gateway: Optional[CardGateway] = None


def get_card_gateway() -> CardGateway:
    global _gateway
    if _gateway is None:
        _gateway = MockGateway() if TEST_MODE else StripeGateway()
    return _gateway
