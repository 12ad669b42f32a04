from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from bookrent.services import calculator, conversion_rates, payment_methods
from bookrent.services.errors import InvalidAmount, MethodDisabled, NoApplicableRate


async def _set_fee(db, method_type, fee):
    method = await payment_methods.get_method(db, method_type)
    return await payment_methods.update(db, method.id, fee_percentage=fee)


async def test_amex_fee_and_conversion(db, booking, chf_rate):
    await _set_fee(db, "amex", Decimal("3"))

    result = await calculator.calculate_amount(db, booking.id, "client_payment", "amex", amount_override="1000")

    assert result.fee_amount == Decimal("30.00")
    assert result.total_amount == Decimal("1030.00")
    assert result.converted_amount == Decimal("1060.90")
    assert result.final_currency == "CHF"
    assert result.charge_amount == Decimal("1060.90")


@pytest.mark.parametrize("method_type", ["visa_mastercard", "amex", "bank_transfer"])
@pytest.mark.parametrize("fee", ["0", "2.5", "17", "100"])
async def test_security_deposit_never_carries_a_fee(db, booking, chf_rate, method_type, fee):
    await _set_fee(db, method_type, Decimal(fee))

    result = await calculator.calculate_amount(db, booking.id, "security_deposit", method_type, amount_override="1500")

    assert result.fee_amount == Decimal("0")
    assert result.fee_percentage == Decimal("0")
    assert result.total_amount == Decimal("1500.00")


async def test_conversion_without_rate_fails(db, booking):
    with pytest.raises(NoApplicableRate):
        await calculator.calculate_amount(db, booking.id, "client_payment", "amex", amount_override="100")


async def test_future_rate_is_not_applicable(db, booking):
    await conversion_rates.add_rate(
        db, "EUR", "CHF", Decimal("0.95"), effective_date=datetime.utcnow() + timedelta(days=2)
    )
    with pytest.raises(NoApplicableRate):
        await calculator.calculate_amount(db, booking.id, "client_payment", "amex", amount_override="100")


async def test_latest_effective_rate_wins(db, booking, chf_rate):
    await conversion_rates.add_rate(
        db, "EUR", "CHF", Decimal("0.97"), effective_date=datetime.utcnow() - timedelta(hours=1)
    )
    result = await calculator.calculate_amount(db, booking.id, "balance_payment", "amex", amount_override="100")
    assert result.conversion_rate == Decimal("0.97")


async def test_same_currency_skips_conversion(db, make_booking):
    booking = await make_booking(currency="CHF")
    result = await calculator.calculate_amount(db, booking.id, "client_payment", "amex", amount_override="200")
    assert result.converted_amount is None
    assert result.conversion_rate is None
    assert result.final_currency == "CHF"
    assert result.total_amount == Decimal("207.00")


async def test_fee_rounds_half_up(db, booking):
    await _set_fee(db, "visa_mastercard", Decimal("2.5"))
    result = await calculator.calculate_amount(db, booking.id, "client_payment", "visa_mastercard", amount_override="0.30")
    # 0.0075 rounds to 0.01
    assert result.fee_amount == Decimal("0.01")
    assert result.total_amount == Decimal("0.31")


@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
async def test_invalid_amounts_are_rejected(db, booking, amount):
    with pytest.raises(InvalidAmount):
        await calculator.calculate_amount(db, booking.id, "client_payment", "visa_mastercard", amount_override=amount)


async def test_manual_method_is_staff_only(db, booking):
    with pytest.raises(MethodDisabled):
        await calculator.calculate_amount(db, booking.id, "client_payment", "manual", is_admin=False)
    result = await calculator.calculate_amount(db, booking.id, "client_payment", "manual", is_admin=True)
    assert result.fee_amount == Decimal("0")


async def test_disabled_method_is_rejected(db, booking):
    method = await payment_methods.get_method(db, "visa_mastercard")
    await payment_methods.update(db, method.id, is_enabled=False)
    with pytest.raises(MethodDisabled):
        await calculator.calculate_amount(db, booking.id, "client_payment", "visa_mastercard", is_admin=True)


async def test_base_amount_resolution(db, make_booking):
    booking = await make_booking(
        amount_total=Decimal("1200.00"),
        amount_paid=Decimal("300.00"),
        payment_amount_percent=Decimal("30"),
    )
    assert calculator.resolve_base_amount(booking, "client_payment") == Decimal("360")
    assert calculator.resolve_base_amount(booking, "balance_payment") == Decimal("900")
    assert calculator.resolve_base_amount(booking, "security_deposit") == Decimal("1500")
    assert calculator.resolve_base_amount(booking, "client_payment", "50") == Decimal("50")
