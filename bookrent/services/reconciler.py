# FILE: bookrent/services/reconciler.py
"""Applies payment outcomes to the books.

Every settlement, from a gateway webhook, an admin sync or an offline
confirmation, goes through ``_settle``: one transaction that flips the
payment to ``paid`` with a compare-and-set and credits the booking with an
atomic increment. A duplicate delivery finds the payment already terminal
and changes nothing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.models.booking import Booking
from bookrent.models.gateway_event import GatewayEvent
from bookrent.models.payment import (
    LinkStatus,
    OPEN_LINK_STATUSES,
    TERMINAL_LINK_STATUSES,
    Payment,
    PaymentIntent,
)
from bookrent.models.payment_method import CARD_METHOD_TYPES, PaymentMethodType
from bookrent.services import audit_service, security_deposits
from bookrent.services.errors import (
    PaymentError,
    PaymentValidationError,
    ReconciliationFault,
    StateConflict,
    UnknownTransaction,
)
from bookrent.services.gateway import COMPLETED, EXPIRED, CardGateway, GatewayNotification, get_card_gateway
from bookrent.services.payment_links import effective_link_status, get_payment

logger = logging.getLogger("bookrent.reconciler")

_CLOSING_STATES = {
    EXPIRED: LinkStatus.EXPIRED.value,
}


@dataclass
class ApplyResult:
    payment_id: str
    status: str
    applied: bool
    reason: Optional[str] = None


def credited_amount(payment: Payment, booking: Booking) -> Decimal:
    """What a settled payment adds to ``booking.amount_paid``, in booking currency."""
    if payment.currency == booking.currency:
        return Decimal(str(payment.total_amount))
    if payment.final_currency == booking.currency and payment.converted_amount is not None:
        return Decimal(str(payment.converted_amount))
    logger.warning(
        "Payment %s currency %s differs from booking %s currency %s",
        payment.id, payment.currency, booking.id, booking.currency,
    )
    return Decimal(str(payment.total_amount))


async def _find_by_reference(db: AsyncSession, reference: str) -> Optional[Payment]:
    result = await db.execute(
        select(Payment)
        .where(or_(Payment.gateway_session_id == reference, Payment.gateway_transaction_id == reference))
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# ─────────────────────────────────────────────
# APPLY
# ─────────────────────────────────────────────

async def apply(db: AsyncSession, notification: GatewayNotification) -> ApplyResult:
    """Apply one terminal gateway outcome. Safe to call any number of times."""
    payment = await _find_by_reference(db, notification.reference)
    if payment is None or payment.payment_method_type not in CARD_METHOD_TYPES:
        logger.warning("Gateway notification for unknown reference %s", notification.reference)
        raise UnknownTransaction(notification.reference)

    if payment.payment_link_status in TERMINAL_LINK_STATUSES:
        logger.info(
            "Payment %s already %s, ignoring %s notification",
            payment.id, payment.payment_link_status, notification.final_state,
        )
        return ApplyResult(payment.id, payment.payment_link_status, applied=False, reason="already_terminal")

    if notification.final_state == COMPLETED:
        transaction_id = notification.transaction_id or payment.gateway_transaction_id or notification.reference
        return await _settle(db, payment, notification.occurred_at, transaction_id)

    target = _CLOSING_STATES.get(notification.final_state, LinkStatus.FAILED.value)
    return await _close(db, payment, target, notification.transaction_id)


async def _close(
    db: AsyncSession,
    payment: Payment,
    target: str,
    transaction_id: Optional[str] = None,
) -> ApplyResult:
    payment_id = payment.id
    values: Dict[str, Any] = {"payment_link_status": target, "updated_at": datetime.utcnow()}
    if transaction_id:
        values["gateway_transaction_id"] = transaction_id

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.payment_link_status.in_(OPEN_LINK_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        await db.refresh(payment)
        return ApplyResult(payment_id, payment.payment_link_status, applied=False, reason="already_terminal")

    audit_service.record(db, entity="payment", entity_id=payment_id, action=target)
    await db.commit()
    await db.refresh(payment)
    logger.info("Payment %s closed as %s", payment_id, target)
    return ApplyResult(payment_id, target, applied=True)


async def _settle(
    db: AsyncSession,
    payment: Payment,
    paid_at: datetime,
    transaction_id: str,
    user_id: Optional[str] = None,
) -> ApplyResult:
    payment_id = payment.id
    booking_id = payment.booking_id
    try:
        # Serializes concurrent settlements of the same booking where the backend supports it
        booking = (
            await db.execute(
                select(Booking)
                .where(Booking.id == booking_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.payment_link_status.in_(OPEN_LINK_STATUSES))
            .values(
                payment_link_status=LinkStatus.PAID.value,
                paid_at=paid_at,
                gateway_transaction_id=transaction_id,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            await db.refresh(payment)
            logger.info("Payment %s was settled concurrently, nothing to apply", payment_id)
            return ApplyResult(payment_id, payment.payment_link_status, applied=False, reason="already_terminal")

        snapshot: Dict[str, Any] = {
            "booking_id": booking_id,
            "payment_intent": payment.payment_intent,
            "total_amount": payment.total_amount,
            "transaction_id": transaction_id,
        }
        if payment.payment_intent == PaymentIntent.SECURITY_DEPOSIT.value:
            authorization = await security_deposits.confirm_for_payment(db, payment_id, paid_at)
            await db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(
                    security_deposit_authorization_id=authorization.id,
                    security_deposit_authorized_at=paid_at,
                )
                .execution_options(synchronize_session=False)
            )
            snapshot["authorization_id"] = authorization.id
        else:
            credit = credited_amount(payment, booking)
            await db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(amount_paid=Booking.amount_paid + credit)
                .execution_options(synchronize_session=False)
            )
            snapshot["credited"] = credit

        audit_service.record(db, entity="payment", entity_id=payment_id, action="paid", user_id=user_id, snapshot=snapshot)
        await db.commit()
    except (PaymentError, SQLAlchemyError) as exc:
        await db.rollback()
        logger.critical(
            "Reconciliation of payment %s (booking %s) failed, nothing applied: %s",
            payment_id, booking_id, exc, exc_info=exc,
        )
        raise ReconciliationFault(f"Failed to apply payment {payment_id}: {exc}") from exc

    await db.refresh(payment)
    await db.refresh(booking)
    logger.info("Payment %s settled (booking %s amount_paid=%s)", payment_id, booking_id, booking.amount_paid)
    return ApplyResult(payment_id, LinkStatus.PAID.value, applied=True)


# ─────────────────────────────────────────────
# ADMIN PATHS
# ─────────────────────────────────────────────

_OFFLINE_PREFIXES = {
    PaymentMethodType.BANK_TRANSFER.value: "BANK_TRANSFER",
    PaymentMethodType.MANUAL.value: "MANUAL",
}


async def confirm_offline(
    db: AsyncSession,
    payment_id: str,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApplyResult:
    """Staff confirmation of a bank transfer or manual payment."""
    now = now or datetime.utcnow()
    payment = await get_payment(db, payment_id)
    prefix = _OFFLINE_PREFIXES.get(payment.payment_method_type)
    if prefix is None:
        raise PaymentValidationError("Card payments are confirmed by the gateway")
    if payment.payment_link_status not in OPEN_LINK_STATUSES:
        raise StateConflict("payment", payment.payment_link_status, LinkStatus.PAID.value)

    transaction_id = f"{prefix}_{now.strftime('%Y-%m-%d')}"
    return await _settle(db, payment, now, transaction_id, user_id=user_id)


async def sync_payment(
    db: AsyncSession,
    payment_id: str,
    gateway: Optional[CardGateway] = None,
    now: Optional[datetime] = None,
) -> ApplyResult:
    """Pull the outcome of a card link from the gateway and persist lazy expiry."""
    now = now or datetime.utcnow()
    payment = await get_payment(db, payment_id)
    if payment.payment_link_status in TERMINAL_LINK_STATUSES:
        return ApplyResult(payment.id, payment.payment_link_status, applied=False, reason="already_terminal")

    if payment.payment_method_type in CARD_METHOD_TYPES and payment.gateway_session_id:
        outcome = await (gateway or get_card_gateway()).fetch_outcome(payment.gateway_session_id)
        if outcome is not None:
            return await process_notification(db, outcome, source="sync", payload={"payment_id": payment.id})

    if effective_link_status(payment, now) == LinkStatus.EXPIRED.value:
        return await _close(db, payment, LinkStatus.EXPIRED.value)
    return ApplyResult(payment.id, payment.payment_link_status, applied=False, reason="still_open")


async def expire_stale_links(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    ids = (
        await db.execute(
            select(Payment.id).where(
                Payment.payment_link_status == LinkStatus.ACTIVE.value,
                Payment.payment_link_expires_at <= now,
            )
        )
    ).scalars().all()
    count = await _expire_links(db, list(ids), now)
    await db.commit()
    if count:
        logger.info("Expired %d stale payment links", count)
    return count


async def _expire_links(db: AsyncSession, payment_ids: List[str], now: datetime) -> int:
    expired = 0
    for payment_id in payment_ids:
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.payment_link_status == LinkStatus.ACTIVE.value)
            .values(payment_link_status=LinkStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        # Skipped when the link was settled or cancelled since it was selected
        if result.rowcount == 1:
            audit_service.record(db, entity="payment", entity_id=payment_id, action="expired")
            expired += 1
    return expired


# ─────────────────────────────────────────────
# EVENT JOURNAL
# ─────────────────────────────────────────────

async def record_event(
    db: AsyncSession,
    source: str,
    notification: Optional[GatewayNotification],
    payload: Optional[Dict[str, Any]] = None,
) -> int:
    """Persist an inbound event before anything is applied. Returns its id."""
    event = GatewayEvent(
        source=source,
        external_event_id=notification.external_event_id if notification else None,
        reference=notification.reference if notification else None,
        state=notification.final_state if notification else None,
        occurred_at=notification.occurred_at if notification else None,
        payload=payload,
        status="received",
        created_at=datetime.utcnow(),
    )
    db.add(event)
    await db.commit()
    return event.id


async def mark_event(db: AsyncSession, event_id: int, status: str, error: Optional[str] = None) -> None:
    event = await db.get(GatewayEvent, event_id, populate_existing=True)
    event.status = status
    event.error = error
    event.processed_at = datetime.utcnow()
    await db.commit()


async def process_notification(
    db: AsyncSession,
    notification: GatewayNotification,
    source: str,
    payload: Optional[Dict[str, Any]] = None,
) -> ApplyResult:
    """Record, apply, then mark the event. Errors are recorded and re-raised."""
    event_id = await record_event(db, source, notification, payload)
    try:
        result = await apply(db, notification)
    except (UnknownTransaction, ReconciliationFault) as exc:
        await mark_event(db, event_id, "failed", exc.message)
        raise
    await mark_event(db, event_id, "applied" if result.applied else "ignored", result.reason)
    return result


async def list_events(db: AsyncSession, limit: int = 100) -> List[GatewayEvent]:
    result = await db.execute(select(GatewayEvent).order_by(GatewayEvent.id.desc()).limit(limit))
    return list(result.scalars().all())
