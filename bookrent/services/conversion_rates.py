# FILE: bookrent/services/conversion_rates.py
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import EXCHANGE_RATE_API_URL
from bookrent.models.conversion_rate import ConversionRate
from bookrent.services import audit_service
from bookrent.services.errors import GatewayError, InvalidAmount, NoApplicableRate, PaymentValidationError

logger = logging.getLogger("bookrent.conversion_rates")

RATE_SOURCES = {"manual", "api", "system"}


def _normalize_currency(code: str) -> str:
    code = (code or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise PaymentValidationError(f"Invalid currency: {code!r} must be a 3-letter ISO code")
    return code


async def latest_rate(
    db: AsyncSession,
    from_currency: str,
    to_currency: str,
    at: Optional[datetime] = None,
) -> ConversionRate:
    """Rate with the latest effective_date not after ``at`` (defaults to now)."""
    at = at or datetime.utcnow()
    stmt = (
        select(ConversionRate)
        .where(
            ConversionRate.from_currency == from_currency,
            ConversionRate.to_currency == to_currency,
            ConversionRate.effective_date <= at,
        )
        .order_by(
            ConversionRate.effective_date.desc(),
            ConversionRate.created_at.desc(),
            ConversionRate.id.desc(),
        )
        .limit(1)
    )
    rate = (await db.execute(stmt)).scalar_one_or_none()
    if rate is None:
        raise NoApplicableRate(from_currency, to_currency)
    return rate


async def list_rates(db: AsyncSession, limit: int = 50) -> List[ConversionRate]:
    result = await db.execute(
        select(ConversionRate)
        .order_by(ConversionRate.effective_date.desc(), ConversionRate.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def add_rate(
    db: AsyncSession,
    from_currency: str,
    to_currency: str,
    rate,
    source: str = "manual",
    effective_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
) -> ConversionRate:
    from_currency = _normalize_currency(from_currency)
    to_currency = _normalize_currency(to_currency)
    if from_currency == to_currency:
        raise PaymentValidationError("from_currency and to_currency must differ")
    if source not in RATE_SOURCES:
        raise PaymentValidationError(f"Invalid rate source: {source}")

    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Invalid rate: {rate!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidAmount("Conversion rate must be greater than 0")

    now = datetime.utcnow()
    record = ConversionRate(
        from_currency=from_currency,
        to_currency=to_currency,
        rate=value,
        effective_date=effective_date or now,
        source=source,
        created_by=user_id,
        created_at=now,
    )
    db.add(record)
    await db.flush()

    audit_service.record(
        db,
        entity="currency_conversion",
        entity_id=str(record.id),
        action="rate_updated",
        user_id=user_id,
        snapshot={
            "from_currency": from_currency,
            "to_currency": to_currency,
            "rate": value,
            "source": source,
            "effective_date": record.effective_date,
        },
    )
    await db.commit()
    await db.refresh(record)

    logger.info("Conversion rate %s→%s set to %s (%s)", from_currency, to_currency, value, source)
    return record


async def fetch_remote_rate(from_currency: str, to_currency: str) -> Decimal:
    """Latest market rate from the public exchange-rate API."""
    url = EXCHANGE_RATE_API_URL.format(base=from_currency)
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.get(url, headers={"Accept": "application/json"}, timeout=30)
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as e:
        logger.error("Exchange rate fetch failed for %s: %s", url, e)
        raise GatewayError(f"Failed to fetch exchange rate from API: {e}")

    rates = data.get("rates") or {}
    if to_currency not in rates:
        raise GatewayError(f"{to_currency} rate not found in API response")
    return Decimal(str(rates[to_currency]))


async def refresh_from_api(
    db: AsyncSession,
    from_currency: str,
    to_currency: str,
    user_id: Optional[str] = None,
) -> ConversionRate:
    from_currency = _normalize_currency(from_currency)
    to_currency = _normalize_currency(to_currency)
    value = await fetch_remote_rate(from_currency, to_currency)
    return await add_rate(db, from_currency, to_currency, value, source="api", user_id=user_id)
