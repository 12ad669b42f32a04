# FILE: bookrent/api/payments.py
"""Payment endpoints for the back-office and the client portal."""

from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.api.deps import get_gateway, http_error, require_back_office
from bookrent.core.database import get_db
from bookrent.models.payment import Payment
from bookrent.models.payment_method import PaymentMethodType
from bookrent.schemas.payments import (
    AdminCalculateRequest,
    ApplyResultResponse,
    CalculateRequest,
    CalculationResponse,
    PaymentCreate,
    PaymentResponse,
    PortalPaymentCreate,
    ProofSubmit,
)
from bookrent.services import calculator, payment_links, reconciler
from bookrent.services.bookings import get_booking, get_booking_by_token
from bookrent.services.errors import PaymentError
from bookrent.services.gateway import CardGateway

router = APIRouter(prefix="/api", tags=["payments"])


async def _to_response(db: AsyncSession, payment: Payment) -> PaymentResponse:
    response = PaymentResponse.model_validate(payment)
    response.payment_link_status = payment_links.effective_link_status(payment, datetime.utcnow())
    if payment.payment_method_type == PaymentMethodType.BANK_TRANSFER.value:
        booking = await get_booking(db, payment.booking_id)
        response.bank_details = payment_links.bank_instructions(payment, booking)
    return response


# ─────────────────────────────────────────────
# BACK-OFFICE
# ─────────────────────────────────────────────

@router.post("/payments/calculate", response_model=CalculationResponse)
async def calculate(
    data: AdminCalculateRequest,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await calculator.calculate_amount(
            db, data.booking_id, data.payment_intent.value, data.method_type,
            amount_override=data.amount, is_admin=True,
        )
    except PaymentError as e:
        raise http_error(e)
    return CalculationResponse(**result.to_dict())


@router.post("/admin/payments", response_model=PaymentResponse)
async def create_payment(
    data: PaymentCreate,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
    gateway: CardGateway = Depends(get_gateway),
):
    try:
        payment = await payment_links.create_payment(
            db,
            data.booking_id,
            data.payment_intent.value,
            data.method_type,
            amount_override=data.amount,
            expires_in_hours=data.expires_in_hours,
            is_admin=True,
            user_id=user["id"],
            note=data.note,
            gateway=gateway,
        )
        return await _to_response(db, payment)
    except PaymentError as e:
        raise http_error(e)


@router.get("/admin/bookings/{booking_id}/payments", response_model=List[PaymentResponse])
async def list_booking_payments(
    booking_id: str,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    try:
        await get_booking(db, booking_id)
        payments = await payment_links.list_payments(db, booking_id)
        return [await _to_response(db, p) for p in payments]
    except PaymentError as e:
        raise http_error(e)


@router.post("/admin/payments/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: str,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    try:
        payment = await payment_links.cancel(db, payment_id, user_id=user["id"])
        return await _to_response(db, payment)
    except PaymentError as e:
        raise http_error(e)


@router.post("/admin/payments/{payment_id}/confirm", response_model=ApplyResultResponse)
async def confirm_payment(
    payment_id: str,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    """Mark a bank transfer or manual payment as received."""
    try:
        result = await reconciler.confirm_offline(db, payment_id, user_id=user["id"])
    except PaymentError as e:
        raise http_error(e)
    return ApplyResultResponse(**result.__dict__)


@router.post("/admin/payments/{payment_id}/sync", response_model=ApplyResultResponse)
async def sync_payment(
    payment_id: str,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
    gateway: CardGateway = Depends(get_gateway),
):
    try:
        result = await reconciler.sync_payment(db, payment_id, gateway=gateway)
    except PaymentError as e:
        raise http_error(e)
    return ApplyResultResponse(**result.__dict__)


# ─────────────────────────────────────────────
# CLIENT PORTAL
# ─────────────────────────────────────────────

@router.post("/portal/{token}/calculate", response_model=CalculationResponse)
async def portal_calculate(token: str, data: CalculateRequest, db: AsyncSession = Depends(get_db)):
    """Preview of what the client will be charged. Same arithmetic as link creation."""
    try:
        booking = await get_booking_by_token(db, token)
        result = await calculator.calculate_amount(
            db, booking.id, data.payment_intent.value, data.method_type,
            amount_override=data.amount, is_admin=False,
        )
    except PaymentError as e:
        raise http_error(e)
    return CalculationResponse(**result.to_dict())


@router.post("/portal/{token}/payments", response_model=PaymentResponse)
async def portal_create_payment(
    token: str,
    data: PortalPaymentCreate,
    db: AsyncSession = Depends(get_db),
    gateway: CardGateway = Depends(get_gateway),
):
    try:
        booking = await get_booking_by_token(db, token)
        payment = await payment_links.create_payment(
            db,
            booking.id,
            data.payment_intent.value,
            data.method_type,
            amount_override=data.amount,
            is_admin=False,
            gateway=gateway,
        )
        return await _to_response(db, payment)
    except PaymentError as e:
        raise http_error(e)


@router.post("/portal/{token}/payments/{payment_id}/proof", response_model=PaymentResponse)
async def portal_submit_proof(
    token: str,
    payment_id: str,
    data: ProofSubmit,
    db: AsyncSession = Depends(get_db),
):
    try:
        booking = await get_booking_by_token(db, token)
        payment = await payment_links.attach_bank_transfer_proof(
            db, payment_id, data.proof_url, booking_id=booking.id
        )
        return await _to_response(db, payment)
    except PaymentError as e:
        raise http_error(e)
