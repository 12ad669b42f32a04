# FILE: bookrent/services/security_deposits.py
"""Security deposit authorizations (card holds).

pending -> authorized -> captured | released, and pending/authorized ->
expired once ``expires_at`` passes. Captured and released are final.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import (
    DEFAULT_CURRENCY,
    DEFAULT_DEPOSIT_HOLD_HOURS,
    DEFAULT_LINK_EXPIRY_HOURS,
    MAX_DEPOSIT_HOLD_HOURS,
)
from bookrent.models.payment import Payment, PaymentIntent
from bookrent.models.payment_method import PaymentMethodType
from bookrent.models.security_deposit import DepositStatus, SecurityDepositAuthorization
from bookrent.services import audit_service, payment_links
from bookrent.services.bookings import get_booking
from bookrent.services.calculator import round_money, to_decimal
from bookrent.services.errors import (
    AuthorizationNotFound,
    CaptureExceedsAuthorization,
    InvalidAmount,
    MissingCaptureReason,
    PaymentValidationError,
    StateConflict,
)
from bookrent.services.gateway import COMPLETED, CardGateway, get_card_gateway
from bookrent.services.payment_methods import CardMethod

logger = logging.getLogger("bookrent.security_deposits")

OPEN_HOLD_STATUSES = {DepositStatus.PENDING.value, DepositStatus.AUTHORIZED.value}

# Tier used to pick the authorization that represents a booking
_PRECEDENCE = {
    DepositStatus.AUTHORIZED.value: 0,
    DepositStatus.CAPTURED.value: 1,
    DepositStatus.RELEASED.value: 1,
}


def effective_status(authorization: SecurityDepositAuthorization, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    if (
        authorization.status in OPEN_HOLD_STATUSES
        and authorization.expires_at is not None
        and authorization.expires_at <= now
    ):
        return DepositStatus.EXPIRED.value
    return authorization.status


def current_authorization(
    authorizations: List[SecurityDepositAuthorization],
) -> Optional[SecurityDepositAuthorization]:
    """Active hold first, then a resolved one, then the most recent of the rest."""
    if not authorizations:
        return None
    newest_first = sorted(authorizations, key=lambda a: a.created_at or datetime.min, reverse=True)
    return min(newest_first, key=lambda a: _PRECEDENCE.get(a.status, 2))


async def get_authorization(db: AsyncSession, authorization_id: str) -> SecurityDepositAuthorization:
    authorization = (
        await db.execute(
            select(SecurityDepositAuthorization)
            .where(SecurityDepositAuthorization.id == authorization_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not authorization:
        raise AuthorizationNotFound(authorization_id)
    return authorization


async def list_for_booking(db: AsyncSession, booking_id: str) -> List[SecurityDepositAuthorization]:
    result = await db.execute(
        select(SecurityDepositAuthorization)
        .where(SecurityDepositAuthorization.booking_id == booking_id)
        .order_by(SecurityDepositAuthorization.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_current(db: AsyncSession, booking_id: str) -> Optional[SecurityDepositAuthorization]:
    await get_booking(db, booking_id)
    return current_authorization(await list_for_booking(db, booking_id))


# ─────────────────────────────────────────────
# REQUEST / CONFIRM
# ─────────────────────────────────────────────

async def request_authorization(
    db: AsyncSession,
    booking_id: str,
    amount=None,
    currency: Optional[str] = None,
    method_type: str = PaymentMethodType.VISA_MASTERCARD.value,
    expires_in_hours: Optional[int] = None,
    user_id: Optional[str] = None,
    gateway: Optional[CardGateway] = None,
    now: Optional[datetime] = None,
) -> SecurityDepositAuthorization:
    """Open a card-authorization link and a pending hold for it."""
    hours = DEFAULT_DEPOSIT_HOLD_HOURS if expires_in_hours is None else int(expires_in_hours)
    if hours < 1 or hours > MAX_DEPOSIT_HOLD_HOURS:
        raise PaymentValidationError(f"expires_in_hours must be between 1 and {MAX_DEPOSIT_HOLD_HOURS}")

    booking = await get_booking(db, booking_id)
    if currency and currency.upper() != (booking.currency or DEFAULT_CURRENCY):
        raise PaymentValidationError(
            f"Deposit currency {currency} does not match booking currency {booking.currency}"
        )

    payment = await payment_links.create_payment(
        db,
        booking_id,
        PaymentIntent.SECURITY_DEPOSIT.value,
        method_type,
        amount_override=amount,
        expires_in_hours=min(hours, DEFAULT_LINK_EXPIRY_HOURS),
        is_admin=True,
        user_id=user_id,
        note="Security deposit authorization",
        gateway=gateway,
        expected_kind=CardMethod,
        commit=False,
        deposit_hold=True,
    )

    now = now or datetime.utcnow()
    authorization = SecurityDepositAuthorization(
        id=str(uuid.uuid4()),
        booking_id=booking.id,
        payment_id=payment.id,
        amount=payment.amount,
        currency=payment.currency,
        status=DepositStatus.PENDING.value,
        hold_hours=hours,
        expires_at=now + timedelta(hours=hours),
        created_at=now,
        updated_at=now,
    )
    db.add(authorization)
    audit_service.record(
        db, entity="security_deposit", entity_id=authorization.id, action="requested", user_id=user_id,
        snapshot={"booking_id": booking.id, "amount": authorization.amount, "hold_hours": hours},
    )
    await db.commit()
    await db.refresh(authorization)
    logger.info(
        "Security deposit %s requested for booking %s: %s %s for %dh",
        authorization.id, booking.reference_code, authorization.amount, authorization.currency, hours,
    )
    return authorization


async def confirm_for_payment(
    db: AsyncSession,
    payment_id: str,
    authorized_at: datetime,
) -> SecurityDepositAuthorization:
    """Move the hold behind ``payment_id`` to authorized. Runs inside the caller's transaction."""
    authorization = (
        await db.execute(
            select(SecurityDepositAuthorization)
            .where(SecurityDepositAuthorization.payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not authorization:
        raise AuthorizationNotFound(f"payment {payment_id}")
    if authorization.status == DepositStatus.AUTHORIZED.value:
        return authorization
    if authorization.status != DepositStatus.PENDING.value:
        raise StateConflict("security_deposit", authorization.status, DepositStatus.AUTHORIZED.value)

    expires_at = authorized_at + timedelta(hours=authorization.hold_hours)
    result = await db.execute(
        update(SecurityDepositAuthorization)
        .where(
            SecurityDepositAuthorization.id == authorization.id,
            SecurityDepositAuthorization.status == DepositStatus.PENDING.value,
        )
        .values(
            status=DepositStatus.AUTHORIZED.value,
            authorized_at=authorized_at,
            expires_at=expires_at,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflict("security_deposit", "changed concurrently", DepositStatus.AUTHORIZED.value)

    audit_service.record(
        db, entity="security_deposit", entity_id=authorization.id, action="authorized",
        snapshot={"authorized_at": authorized_at, "expires_at": expires_at},
    )
    await db.refresh(authorization)
    logger.info("Security deposit %s authorized until %s", authorization.id, expires_at)
    return authorization


# ─────────────────────────────────────────────
# RELEASE / CAPTURE
# ─────────────────────────────────────────────

async def _linked_transaction(db: AsyncSession, authorization: SecurityDepositAuthorization) -> Optional[str]:
    if not authorization.payment_id:
        return None
    payment = (await db.execute(select(Payment).where(Payment.id == authorization.payment_id))).scalar_one_or_none()
    if not payment:
        return None
    return payment.gateway_transaction_id


async def _ensure_live_hold(
    db: AsyncSession,
    authorization: SecurityDepositAuthorization,
    requested: str,
    now: datetime,
) -> None:
    if authorization.status != DepositStatus.AUTHORIZED.value:
        raise StateConflict("security_deposit", authorization.status, requested)
    if authorization.expires_at is not None and authorization.expires_at <= now:
        await _mark_expired(db, [authorization.id], now)
        await db.commit()
        raise StateConflict("security_deposit", DepositStatus.EXPIRED.value, requested)


async def _transition(
    db: AsyncSession,
    authorization: SecurityDepositAuthorization,
    target: str,
    values: dict,
) -> bool:
    result = await db.execute(
        update(SecurityDepositAuthorization)
        .where(
            SecurityDepositAuthorization.id == authorization.id,
            SecurityDepositAuthorization.status == DepositStatus.AUTHORIZED.value,
        )
        .values(status=target, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release(
    db: AsyncSession,
    authorization_id: str,
    user_id: Optional[str] = None,
    gateway: Optional[CardGateway] = None,
    now: Optional[datetime] = None,
) -> SecurityDepositAuthorization:
    """Let the hold go. Releasing an already released hold is a no-op."""
    now = now or datetime.utcnow()
    authorization = await get_authorization(db, authorization_id)
    if authorization.status == DepositStatus.RELEASED.value:
        return authorization
    await _ensure_live_hold(db, authorization, DepositStatus.RELEASED.value, now)

    transaction_id = await _linked_transaction(db, authorization)
    if transaction_id:
        await (gateway or get_card_gateway()).release(transaction_id)

    if not await _transition(db, authorization, DepositStatus.RELEASED.value, {"released_at": now}):
        await db.rollback()
        await db.refresh(authorization)
        if authorization.status == DepositStatus.RELEASED.value:
            return authorization
        raise StateConflict("security_deposit", authorization.status, DepositStatus.RELEASED.value)

    audit_service.record(
        db, entity="security_deposit", entity_id=authorization_id, action="released", user_id=user_id,
        snapshot={"amount": authorization.amount},
    )
    await db.commit()
    await db.refresh(authorization)
    logger.info("Security deposit %s released", authorization_id)
    return authorization


async def capture(
    db: AsyncSession,
    authorization_id: str,
    amount,
    reason: str,
    user_id: Optional[str] = None,
    gateway: Optional[CardGateway] = None,
    now: Optional[datetime] = None,
) -> SecurityDepositAuthorization:
    """Capture up to the authorized amount, e.g. for damages."""
    now = now or datetime.utcnow()
    authorization = await get_authorization(db, authorization_id)

    if not reason or not reason.strip():
        raise MissingCaptureReason("A capture reason is required")
    value = round_money(to_decimal(amount))
    if value <= 0:
        raise InvalidAmount("Capture amount must be greater than 0")
    if value > Decimal(str(authorization.amount)):
        raise CaptureExceedsAuthorization(
            f"Capture amount {value} exceeds authorized amount {authorization.amount}"
        )

    await _ensure_live_hold(db, authorization, DepositStatus.CAPTURED.value, now)

    transaction_id = await _linked_transaction(db, authorization)
    if transaction_id:
        await (gateway or get_card_gateway()).capture(transaction_id, value, authorization.currency)

    captured = await _transition(
        db,
        authorization,
        DepositStatus.CAPTURED.value,
        {"captured_at": now, "captured_amount": value, "capture_reason": reason.strip()},
    )
    if not captured:
        await db.rollback()
        await db.refresh(authorization)
        raise StateConflict("security_deposit", authorization.status, DepositStatus.CAPTURED.value)

    audit_service.record(
        db, entity="security_deposit", entity_id=authorization_id, action="captured", user_id=user_id,
        snapshot={"amount": value, "authorized_amount": authorization.amount, "reason": reason.strip()},
    )
    await db.commit()
    await db.refresh(authorization)
    logger.info("Security deposit %s captured: %s %s", authorization_id, value, authorization.currency)
    return authorization


def remaining_amount(authorization: SecurityDepositAuthorization) -> Decimal:
    return Decimal(str(authorization.amount)) - Decimal(str(authorization.captured_amount or 0))


# ─────────────────────────────────────────────
# SYNC / EXPIRY
# ─────────────────────────────────────────────

async def sync(
    db: AsyncSession,
    booking_id: str,
    gateway: Optional[CardGateway] = None,
) -> Optional[SecurityDepositAuthorization]:
    """Ask the gateway about a still-pending hold and apply a confirmed outcome."""
    from bookrent.services import reconciler

    authorization = await get_current(db, booking_id)
    if authorization is None or authorization.status != DepositStatus.PENDING.value:
        return authorization
    if not authorization.payment_id:
        return authorization

    payment = await payment_links.get_payment(db, authorization.payment_id)
    if not payment.gateway_session_id:
        return authorization

    outcome = await (gateway or get_card_gateway()).fetch_outcome(payment.gateway_session_id)
    if outcome is None or outcome.final_state != COMPLETED:
        return authorization

    await reconciler.process_notification(db, outcome, source="sync", payload={"booking_id": booking_id})
    return await get_authorization(db, authorization.id)


async def _mark_expired(db: AsyncSession, authorization_ids: List[str], now: datetime) -> int:
    expired = 0
    for authorization_id in authorization_ids:
        result = await db.execute(
            update(SecurityDepositAuthorization)
            .where(
                SecurityDepositAuthorization.id == authorization_id,
                SecurityDepositAuthorization.status.in_(OPEN_HOLD_STATUSES),
            )
            .values(status=DepositStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        # Skipped when the hold was resolved since it was selected
        if result.rowcount == 1:
            audit_service.record(db, entity="security_deposit", entity_id=authorization_id, action="expired")
            expired += 1
    return expired


async def expire_stale_holds(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    ids = (
        await db.execute(
            select(SecurityDepositAuthorization.id).where(
                SecurityDepositAuthorization.status.in_(OPEN_HOLD_STATUSES),
                SecurityDepositAuthorization.expires_at <= now,
            )
        )
    ).scalars().all()
    count = await _mark_expired(db, list(ids), now)
    await db.commit()
    if count:
        logger.info("Expired %d security deposit holds", count)
    return count
