# FILE: bookrent/services/calculator.py
"""Fee and currency conversion calculator.

This is the only implementation of the amount arithmetic. The client
portal preview and link creation both call it; the value computed while
creating a link is the one that gets charged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import DEFAULT_CURRENCY, MONEY_QUANT
from bookrent.models.booking import Booking
from bookrent.models.payment import PaymentIntent
from bookrent.models.payment_method import PaymentMethod
from bookrent.services import conversion_rates, payment_methods
from bookrent.services.bookings import get_booking
from bookrent.services.errors import InvalidAmount, PaymentValidationError

logger = logging.getLogger("bookrent.calculator")

ZERO = Decimal("0")


@dataclass
class CalculationResult:
    base_amount: Decimal
    currency: str
    payment_intent: str
    method_type: str
    method_display_name: str
    fee_percentage: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    converted_amount: Optional[Decimal]
    conversion_rate: Optional[Decimal]
    final_currency: str

    @property
    def charge_amount(self) -> Decimal:
        """Amount the payer is charged, in ``final_currency``."""
        return self.converted_amount if self.converted_amount is not None else self.total_amount

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_decimal(value, field: str = "amount") -> Decimal:
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Invalid {field}: {value!r}")
    if not d.is_finite():
        raise InvalidAmount(f"Invalid {field}: {value!r}")
    return d


def parse_intent(payment_intent) -> PaymentIntent:
    try:
        return PaymentIntent(payment_intent)
    except ValueError:
        raise PaymentValidationError(f"Invalid payment intent: {payment_intent}")


async def calculate(
    db: AsyncSession,
    base_amount,
    currency: str,
    payment_intent,
    method: PaymentMethod,
    is_admin: bool = False,
    at: Optional[datetime] = None,
) -> CalculationResult:
    intent = parse_intent(payment_intent)
    payment_methods.ensure_usable(method, is_admin)

    base = round_money(to_decimal(base_amount))
    if base <= ZERO:
        raise InvalidAmount("Amount must be greater than 0")

    # No fees on security deposits, whatever the method is configured with
    if intent == PaymentIntent.SECURITY_DEPOSIT:
        fee_percentage = ZERO
    else:
        fee_percentage = Decimal(str(method.fee_percentage or 0))

    fee_amount = round_money(base * fee_percentage / Decimal(100))
    total_amount = base + fee_amount

    converted_amount = None
    rate_value = None
    final_currency = currency

    if method.requires_conversion and method.settlement_currency != currency:
        rate = await conversion_rates.latest_rate(db, currency, method.settlement_currency, at=at)
        rate_value = Decimal(str(rate.rate))
        converted_amount = round_money(total_amount * rate_value)
        final_currency = method.settlement_currency

    result = CalculationResult(
        base_amount=base,
        currency=currency,
        payment_intent=intent.value,
        method_type=method.method_type,
        method_display_name=method.display_name,
        fee_percentage=fee_percentage,
        fee_amount=fee_amount,
        total_amount=total_amount,
        converted_amount=converted_amount,
        conversion_rate=rate_value,
        final_currency=final_currency,
    )
    logger.info(
        "Calculated %s via %s: base=%s %s fee=%s total=%s converted=%s %s",
        intent.value, method.method_type, base, currency, fee_amount,
        total_amount, converted_amount, final_currency,
    )
    return result


def resolve_base_amount(booking: Booking, payment_intent, amount_override=None) -> Decimal:
    """Amount due for ``payment_intent`` before fees."""
    if amount_override is not None:
        return to_decimal(amount_override)

    intent = parse_intent(payment_intent)
    amount_total = Decimal(str(booking.amount_total or 0))

    if intent == PaymentIntent.CLIENT_PAYMENT:
        percent = Decimal(str(booking.payment_amount_percent or 0))
        if percent > ZERO:
            return amount_total * percent / Decimal(100)
        return amount_total
    if intent == PaymentIntent.BALANCE_PAYMENT:
        return amount_total - Decimal(str(booking.amount_paid or 0))

    deposit = Decimal(str(booking.security_deposit_amount or 0))
    if deposit <= ZERO:
        raise InvalidAmount("Security deposit amount must be provided")
    return deposit


async def calculate_amount(
    db: AsyncSession,
    booking_id: str,
    payment_intent,
    method_type: str,
    amount_override=None,
    is_admin: bool = False,
    at: Optional[datetime] = None,
) -> CalculationResult:
    booking = await get_booking(db, booking_id)
    base = resolve_base_amount(booking, payment_intent, amount_override)
    method = await payment_methods.get_method(db, method_type)
    return await calculate(
        db,
        base,
        booking.currency or DEFAULT_CURRENCY,
        payment_intent,
        method,
        is_admin=is_admin,
        at=at,
    )
