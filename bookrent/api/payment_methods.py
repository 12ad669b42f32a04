# FILE: bookrent/api/payment_methods.py
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.api.deps import http_error, require_back_office
from bookrent.core.database import get_db
from bookrent.schemas.payments import (
    ConversionRateCreate,
    ConversionRateResponse,
    PaymentMethodResponse,
    PaymentMethodUpdate,
)
from bookrent.services import conversion_rates, payment_methods
from bookrent.services.errors import PaymentError, PaymentValidationError

router = APIRouter(prefix="/api", tags=["payment-methods"])


@router.get("/payment-methods", response_model=List[PaymentMethodResponse])
async def list_public_methods(db: AsyncSession = Depends(get_db)):
    """Methods a client may pick on the portal."""
    return await payment_methods.list_enabled(db, for_admin=False)


@router.get("/admin/payment-methods", response_model=List[PaymentMethodResponse])
async def list_admin_methods(
    include_disabled: bool = False,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    if include_disabled:
        return await payment_methods.list_all(db)
    return await payment_methods.list_enabled(db, for_admin=True)


@router.patch("/admin/payment-methods/{method_id}", response_model=PaymentMethodResponse)
async def update_method(
    method_id: int,
    data: PaymentMethodUpdate,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await payment_methods.update(
            db, method_id, fee_percentage=data.fee_percentage, is_enabled=data.is_enabled, user_id=user["id"]
        )
    except PaymentError as e:
        raise http_error(e)


@router.get("/admin/conversion-rates", response_model=List[ConversionRateResponse])
async def list_conversion_rates(
    limit: int = 50,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    return await conversion_rates.list_rates(db, limit=limit)


@router.post("/admin/conversion-rates", response_model=ConversionRateResponse)
async def add_conversion_rate(
    data: ConversionRateCreate,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    """Append a rate, either typed in or fetched from the exchange-rate API."""
    try:
        if data.fetch_from_api:
            return await conversion_rates.refresh_from_api(
                db, data.from_currency, data.to_currency, user_id=user["id"]
            )
        if data.rate is None:
            raise PaymentValidationError("rate is required unless fetch_from_api is set")
        return await conversion_rates.add_rate(
            db,
            data.from_currency,
            data.to_currency,
            data.rate,
            source="manual",
            effective_date=data.effective_date,
            user_id=user["id"],
        )
    except PaymentError as e:
        raise http_error(e)
