# FILE: bookrent/api/security_deposits.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.api.deps import get_gateway, http_error, require_back_office
from bookrent.core.database import get_db
from bookrent.models.security_deposit import SecurityDepositAuthorization
from bookrent.schemas.payments import CaptureRequest, DepositCreate, DepositResponse
from bookrent.services import payment_links, security_deposits
from bookrent.services.errors import PaymentError
from bookrent.services.gateway import CardGateway

router = APIRouter(prefix="/api/admin", tags=["security-deposits"])


async def _to_response(db: AsyncSession, authorization: SecurityDepositAuthorization) -> DepositResponse:
    response = DepositResponse.model_validate(authorization)
    response.status = security_deposits.effective_status(authorization)
    response.remaining_amount = security_deposits.remaining_amount(authorization)
    if authorization.payment_id:
        payment = await payment_links.get_payment(db, authorization.payment_id)
        response.payment_link_url = payment.payment_link_url
    return response


@router.post("/security-deposits", response_model=DepositResponse)
async def authorize_security_deposit(
    data: DepositCreate,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
    gateway: CardGateway = Depends(get_gateway),
):
    try:
        authorization = await security_deposits.request_authorization(
            db,
            data.booking_id,
            amount=data.amount,
            currency=data.currency,
            method_type=data.method_type,
            expires_in_hours=data.expires_in_hours,
            user_id=user["id"],
            gateway=gateway,
        )
        return await _to_response(db, authorization)
    except PaymentError as e:
        raise http_error(e)


@router.get("/bookings/{booking_id}/security-deposit", response_model=DepositResponse)
async def get_current_deposit(
    booking_id: str,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    try:
        authorization = await security_deposits.get_current(db, booking_id)
        if authorization is None:
            raise HTTPException(status_code=404, detail="No security deposit for this booking")
        return await _to_response(db, authorization)
    except PaymentError as e:
        raise http_error(e)


@router.post("/bookings/{booking_id}/security-deposit/sync", response_model=DepositResponse)
async def sync_deposit(
    booking_id: str,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
    gateway: CardGateway = Depends(get_gateway),
):
    try:
        authorization = await security_deposits.sync(db, booking_id, gateway=gateway)
        if authorization is None:
            raise HTTPException(status_code=404, detail="No security deposit for this booking")
        return await _to_response(db, authorization)
    except PaymentError as e:
        raise http_error(e)


@router.post("/security-deposits/{authorization_id}/release", response_model=DepositResponse)
async def release_deposit(
    authorization_id: str,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
    gateway: CardGateway = Depends(get_gateway),
):
    try:
        authorization = await security_deposits.release(db, authorization_id, user_id=user["id"], gateway=gateway)
        return await _to_response(db, authorization)
    except PaymentError as e:
        raise http_error(e)


@router.post("/security-deposits/{authorization_id}/capture", response_model=DepositResponse)
async def capture_deposit(
    authorization_id: str,
    data: CaptureRequest,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
    gateway: CardGateway = Depends(get_gateway),
):
    try:
        authorization = await security_deposits.capture(
            db, authorization_id, data.amount, data.reason, user_id=user["id"], gateway=gateway
        )
        return await _to_response(db, authorization)
    except PaymentError as e:
        raise http_error(e)
