# FILE: bookrent/services/payment_links.py
"""Payment link manager.

Creates and cancels payment links. Card links come from the card gateway,
bank-transfer links are static instruction pages, manual payments only
carry instructions. Link status moves forward only:
pending -> active -> paid | expired | cancelled | failed.
Settlement (``paid``) is written by the reconciler, never here.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import (
    APP_DOMAIN,
    BANK_ACCOUNT_HOLDER,
    BANK_BIC,
    BANK_IBAN,
    BANK_NAME,
    DEFAULT_CURRENCY,
    DEFAULT_LINK_EXPIRY_HOURS,
    MAX_DEPOSIT_HOLD_HOURS,
)
from bookrent.models.booking import Booking
from bookrent.models.payment import LinkStatus, OPEN_LINK_STATUSES, Payment, PaymentIntent
from bookrent.models.payment_method import PaymentMethodType
from bookrent.services import audit_service, calculator, payment_methods
from bookrent.services.bookings import ensure_payable, get_booking
from bookrent.services.calculator import CalculationResult
from bookrent.services.errors import (
    PaymentNotFound,
    PaymentValidationError,
    StateConflict,
)
from bookrent.services.gateway import CardGateway, get_card_gateway
from bookrent.services.payment_methods import BankTransferMethod, CardMethod, ManualMethod, MethodKind

logger = logging.getLogger("bookrent.payment_links")


# ─────────────────────────────────────────────
# STATUS
# ─────────────────────────────────────────────

def effective_link_status(payment: Payment, now: Optional[datetime] = None) -> str:
    """Status to display: an active link past its expiry reads as expired."""
    now = now or datetime.utcnow()
    if (
        payment.payment_link_status == LinkStatus.ACTIVE.value
        and payment.payment_link_expires_at is not None
        and payment.payment_link_expires_at <= now
    ):
        return LinkStatus.EXPIRED.value
    return payment.payment_link_status


async def get_payment(db: AsyncSession, payment_id: str) -> Payment:
    stmt = select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
    payment = (await db.execute(stmt)).scalar_one_or_none()
    if not payment:
        raise PaymentNotFound(payment_id)
    return payment


async def list_payments(db: AsyncSession, booking_id: str) -> List[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.created_at.desc())
    )
    return list(result.scalars().all())


def bank_instructions(payment: Payment, booking: Booking) -> Dict[str, Any]:
    return {
        "account_holder": BANK_ACCOUNT_HOLDER,
        "iban": BANK_IBAN,
        "bic": BANK_BIC,
        "bank_name": BANK_NAME,
        "reference": f"{booking.reference_code}-{payment.id[:8]}",
        "amount": payment.total_amount,
        "currency": payment.currency,
    }


# ─────────────────────────────────────────────
# PER-METHOD FLOWS
# ─────────────────────────────────────────────

async def _open_card_link(
    payment: Payment,
    kind: CardMethod,
    booking: Booking,
    calc: CalculationResult,
    expires_at: datetime,
    gateway: CardGateway,
) -> None:
    intent = calc.payment_intent
    description = f"{intent.replace('_', ' ').capitalize()} - {booking.reference_code}"
    link = await gateway.create_link(
        payment_id=payment.id,
        booking_reference=booking.reference_code,
        description=description,
        amount=calc.charge_amount,
        currency=calc.final_currency,
        expires_at=expires_at,
        authorize_only=intent == PaymentIntent.SECURITY_DEPOSIT.value,
        customer_email=booking.client_email,
        metadata={
            "booking_id": booking.id,
            "payment_intent": intent,
            "original_amount": str(calc.base_amount),
            "fee_amount": str(calc.fee_amount),
            "total_amount": str(calc.total_amount),
        },
    )
    payment.payment_link_url = link.url
    payment.gateway_session_id = link.session_id
    payment.gateway_transaction_id = link.transaction_id
    payment.payment_link_expires_at = link.expires_at
    payment.payment_link_status = LinkStatus.ACTIVE.value


async def _open_bank_transfer_link(
    payment: Payment,
    kind: BankTransferMethod,
    booking: Booking,
    calc: CalculationResult,
    expires_at: datetime,
    gateway: CardGateway,
) -> None:
    payment.payment_link_url = f"{APP_DOMAIN}/payment/bank-transfer?payment_id={payment.id}"
    payment.payment_link_expires_at = expires_at
    payment.payment_link_status = LinkStatus.ACTIVE.value


async def _open_manual_instruction(
    payment: Payment,
    kind: ManualMethod,
    booking: Booking,
    calc: CalculationResult,
    expires_at: datetime,
    gateway: CardGateway,
) -> None:
    payment.payment_link_url = None
    payment.payment_link_expires_at = None
    payment.payment_link_status = LinkStatus.PENDING.value


_FLOWS = {
    CardMethod: _open_card_link,
    BankTransferMethod: _open_bank_transfer_link,
    ManualMethod: _open_manual_instruction,
}


# ─────────────────────────────────────────────
# CREATE
# ─────────────────────────────────────────────

def _link_hours(expires_in_hours: Optional[int]) -> int:
    hours = DEFAULT_LINK_EXPIRY_HOURS if expires_in_hours is None else int(expires_in_hours)
    if hours < 1 or hours > MAX_DEPOSIT_HOLD_HOURS:
        raise PaymentValidationError(f"expires_in_hours must be between 1 and {MAX_DEPOSIT_HOLD_HOURS}")
    return hours


async def create_payment(
    db: AsyncSession,
    booking_id: str,
    payment_intent,
    method_type: str,
    amount_override=None,
    expires_in_hours: Optional[int] = None,
    is_admin: bool = False,
    user_id: Optional[str] = None,
    note: Optional[str] = None,
    gateway: Optional[CardGateway] = None,
    expected_kind: Optional[type] = None,
    commit: bool = True,
    deposit_hold: bool = False,
) -> Payment:
    """Price a payment with the calculator and open its link or instructions.

    Security-deposit links only exist behind a hold, so that intent is
    accepted only when ``deposit_hold`` is set by the deposit authorizer.
    """
    intent = calculator.parse_intent(payment_intent)
    if intent == PaymentIntent.SECURITY_DEPOSIT and not deposit_hold:
        raise PaymentValidationError(
            "Security deposits are requested through /api/admin/security-deposits"
        )

    booking = await get_booking(db, booking_id)
    ensure_payable(booking)

    method = await payment_methods.get_method(db, method_type)
    kind: MethodKind = payment_methods.kind_of(method)
    if expected_kind is not None and not isinstance(kind, expected_kind):
        raise PaymentValidationError(f"Payment method {method_type} cannot be used for this operation")

    base = calculator.resolve_base_amount(booking, payment_intent, amount_override)
    calc = await calculator.calculate(
        db, base, booking.currency or DEFAULT_CURRENCY, payment_intent, method, is_admin=is_admin
    )

    now = datetime.utcnow()
    expires_at = now + timedelta(hours=_link_hours(expires_in_hours))

    payment = Payment(
        id=str(uuid.uuid4()),
        booking_id=booking.id,
        amount=calc.base_amount,
        currency=calc.currency,
        payment_intent=calc.payment_intent,
        payment_method_type=method.method_type,
        fee_percentage=calc.fee_percentage,
        fee_amount=calc.fee_amount,
        total_amount=calc.total_amount,
        converted_amount=calc.converted_amount,
        conversion_rate_used=calc.conversion_rate,
        final_currency=calc.final_currency,
        payment_link_status=LinkStatus.PENDING.value,
        note=note or f"{calc.payment_intent.replace('_', ' ')} via {method.display_name}",
        created_by=user_id,
        created_at=now,
        updated_at=now,
    )

    await _FLOWS[type(kind)](payment, kind, booking, calc, expires_at, gateway or get_card_gateway())

    db.add(payment)
    audit_service.record(
        db,
        entity="payment",
        entity_id=payment.id,
        action="link_created",
        user_id=user_id,
        snapshot={
            "booking_id": booking.id,
            "payment_intent": payment.payment_intent,
            "method": payment.payment_method_type,
            "amount": payment.amount,
            "fee_amount": payment.fee_amount,
            "total_amount": payment.total_amount,
            "converted_amount": payment.converted_amount,
            "final_currency": payment.final_currency,
            "status": payment.payment_link_status,
        },
    )
    if commit:
        await db.commit()
        await db.refresh(payment)
    else:
        await db.flush()

    logger.info(
        "Payment %s created for booking %s: %s via %s, %s %s (%s)",
        payment.id, booking.reference_code, payment.payment_intent, payment.payment_method_type,
        calc.charge_amount, calc.final_currency, payment.payment_link_status,
    )
    return payment


async def create_card_payment_link(
    db: AsyncSession,
    booking_id: str,
    amount,
    currency: str,
    method_type: str,
    expires_in_hours: Optional[int] = None,
    payment_intent: str = PaymentIntent.CLIENT_PAYMENT.value,
    is_admin: bool = False,
    user_id: Optional[str] = None,
    gateway: Optional[CardGateway] = None,
) -> Payment:
    booking = await get_booking(db, booking_id)
    if currency and currency.upper() != (booking.currency or DEFAULT_CURRENCY):
        raise PaymentValidationError(
            f"Amount currency {currency} does not match booking currency {booking.currency}"
        )
    return await create_payment(
        db,
        booking_id,
        payment_intent,
        method_type,
        amount_override=amount,
        expires_in_hours=expires_in_hours,
        is_admin=is_admin,
        user_id=user_id,
        gateway=gateway,
        expected_kind=CardMethod,
    )


async def create_bank_transfer_payment(
    db: AsyncSession,
    booking_id: str,
    amount,
    payment_intent: str = PaymentIntent.CLIENT_PAYMENT.value,
    is_admin: bool = False,
    user_id: Optional[str] = None,
) -> Payment:
    return await create_payment(
        db,
        booking_id,
        payment_intent,
        PaymentMethodType.BANK_TRANSFER.value,
        amount_override=amount,
        is_admin=is_admin,
        user_id=user_id,
        expected_kind=BankTransferMethod,
    )


# ─────────────────────────────────────────────
# CANCEL / PROOF
# ─────────────────────────────────────────────

async def cancel(
    db: AsyncSession,
    payment_id: str,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """Cancel a live, unpaid link. Nothing is refunded."""
    now = now or datetime.utcnow()
    payment = await get_payment(db, payment_id)
    current = effective_link_status(payment, now)
    if current != LinkStatus.ACTIVE.value:
        raise StateConflict("payment", current, LinkStatus.CANCELLED.value)

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.payment_link_status == LinkStatus.ACTIVE.value)
        .values(payment_link_status=LinkStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        await db.refresh(payment)
        raise StateConflict("payment", payment.payment_link_status, LinkStatus.CANCELLED.value)

    audit_service.record(
        db, entity="payment", entity_id=payment_id, action="cancelled", user_id=user_id,
        snapshot={"previous_status": current},
    )
    await db.commit()
    await db.refresh(payment)
    logger.info("Payment %s cancelled", payment_id)
    return payment


async def attach_bank_transfer_proof(
    db: AsyncSession,
    payment_id: str,
    proof_url: str,
    booking_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """Record the client's transfer proof and retire sibling links of the same intent."""
    if not proof_url or not proof_url.strip():
        raise PaymentValidationError("proof_url is required")

    now = now or datetime.utcnow()
    payment = await get_payment(db, payment_id)
    if booking_id is not None and payment.booking_id != booking_id:
        raise PaymentNotFound(payment_id)
    if payment.payment_method_type != PaymentMethodType.BANK_TRANSFER.value:
        raise PaymentValidationError("Proof can only be attached to bank transfer payments")
    current = effective_link_status(payment, now)
    if current not in OPEN_LINK_STATUSES:
        raise StateConflict(
            "payment", current, "proof_submitted",
            message=f"Cannot attach proof to a payment in status {current}",
        )

    payment.proof_url = proof_url.strip()
    payment.updated_at = now

    siblings = await db.execute(
        update(Payment)
        .where(
            Payment.booking_id == payment.booking_id,
            Payment.payment_intent == payment.payment_intent,
            Payment.id != payment.id,
            Payment.payment_link_status.in_(OPEN_LINK_STATUSES),
        )
        .values(payment_link_status=LinkStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )

    audit_service.record(
        db, entity="payment", entity_id=payment.id, action="proof_submitted",
        snapshot={"proof_url": payment.proof_url, "cancelled_siblings": siblings.rowcount},
    )
    await db.commit()
    await db.refresh(payment)
    logger.info(
        "Bank transfer proof attached to payment %s (%d sibling links cancelled)",
        payment.id, siblings.rowcount,
    )
    return payment
