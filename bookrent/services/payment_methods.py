# FILE: bookrent/services/payment_methods.py
"""Payment method registry.

Methods are configuration rows; the behaviour behind a method is a closed
set of kinds (card, bank transfer, manual) resolved once through
``kind_of`` so callers never branch on raw ``method_type`` strings.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.models.payment_method import PaymentMethod, PaymentMethodType
from bookrent.services import audit_service
from bookrent.services.errors import (
    InvalidAmount,
    MethodDisabled,
    NotFoundError,
    UnknownPaymentMethod,
)

logger = logging.getLogger("bookrent.payment_methods")


# ─────────────────────────────────────────────
# METHOD KINDS
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class CardMethod:
    method: PaymentMethod


@dataclass(frozen=True)
class BankTransferMethod:
    method: PaymentMethod


@dataclass(frozen=True)
class ManualMethod:
    method: PaymentMethod


MethodKind = Union[CardMethod, BankTransferMethod, ManualMethod]

_KINDS = {
    PaymentMethodType.VISA_MASTERCARD.value: CardMethod,
    PaymentMethodType.AMEX.value: CardMethod,
    PaymentMethodType.BANK_TRANSFER.value: BankTransferMethod,
    PaymentMethodType.MANUAL.value: ManualMethod,
}


def kind_of(method: PaymentMethod) -> MethodKind:
    try:
        return _KINDS[method.method_type](method)
    except KeyError:
        raise UnknownPaymentMethod(method.method_type)


# ─────────────────────────────────────────────
# DEFAULTS
# ─────────────────────────────────────────────

DEFAULT_METHODS = [
    {
        "method_type": PaymentMethodType.VISA_MASTERCARD.value,
        "display_name": "Visa / Mastercard",
        "description": "Credit or debit card payment processed in EUR",
        "fee_percentage": Decimal("2.0"),
        "settlement_currency": "EUR",
        "requires_conversion": False,
        "sort_order": 1,
        "is_enabled": True,
        "admin_only": False,
    },
    {
        "method_type": PaymentMethodType.AMEX.value,
        "display_name": "American Express",
        "description": "Credit card payment processed in CHF (converted from EUR)",
        "fee_percentage": Decimal("3.5"),
        "settlement_currency": "CHF",
        "requires_conversion": True,
        "sort_order": 2,
        "is_enabled": True,
        "admin_only": False,
    },
    {
        "method_type": PaymentMethodType.BANK_TRANSFER.value,
        "display_name": "Bank Transfer",
        "description": "Direct bank transfer - no additional fees",
        "fee_percentage": Decimal("0"),
        "settlement_currency": "EUR",
        "requires_conversion": False,
        "sort_order": 3,
        "is_enabled": True,
        "admin_only": False,
    },
    {
        "method_type": PaymentMethodType.MANUAL.value,
        "display_name": "Cash / Crypto",
        "description": "Other payment methods (cash, cryptocurrency, etc.)",
        "fee_percentage": Decimal("0"),
        "settlement_currency": "EUR",
        "requires_conversion": False,
        "sort_order": 4,
        "is_enabled": True,
        "admin_only": True,
    },
]


async def seed_default_methods(db: AsyncSession) -> int:
    """Insert the default methods when the registry is empty."""
    existing = (await db.execute(select(PaymentMethod.id).limit(1))).scalar_one_or_none()
    if existing is not None:
        return 0
    for row in DEFAULT_METHODS:
        db.add(PaymentMethod(**row, created_at=datetime.utcnow(), updated_at=datetime.utcnow()))
    await db.commit()
    logger.info("Seeded %d default payment methods", len(DEFAULT_METHODS))
    return len(DEFAULT_METHODS)


# ─────────────────────────────────────────────
# READS
# ─────────────────────────────────────────────

async def list_enabled(db: AsyncSession, for_admin: bool) -> List[PaymentMethod]:
    stmt = select(PaymentMethod).where(PaymentMethod.is_enabled == True)  # noqa: E712
    if not for_admin:
        stmt = stmt.where(PaymentMethod.admin_only == False)  # noqa: E712
    stmt = stmt.order_by(PaymentMethod.sort_order, PaymentMethod.id)
    return list((await db.execute(stmt)).scalars().all())


async def list_all(db: AsyncSession) -> List[PaymentMethod]:
    result = await db.execute(select(PaymentMethod).order_by(PaymentMethod.sort_order, PaymentMethod.id))
    return list(result.scalars().all())


async def get_method(db: AsyncSession, method_type: str) -> PaymentMethod:
    method = (
        await db.execute(select(PaymentMethod).where(PaymentMethod.method_type == method_type))
    ).scalar_one_or_none()
    if not method:
        raise UnknownPaymentMethod(method_type)
    return method


def ensure_usable(method: PaymentMethod, is_admin: bool) -> None:
    if not method.is_enabled:
        raise MethodDisabled(method.method_type)
    if method.admin_only and not is_admin:
        raise MethodDisabled(method.method_type, reason="restricted to staff")


# ─────────────────────────────────────────────
# ADMIN MUTATION
# ─────────────────────────────────────────────

async def update(
    db: AsyncSession,
    method_id: int,
    fee_percentage: Optional[Decimal] = None,
    is_enabled: Optional[bool] = None,
    user_id: Optional[str] = None,
) -> PaymentMethod:
    """Change fee or availability. Existing payments keep their frozen fees."""
    method = (await db.execute(select(PaymentMethod).where(PaymentMethod.id == method_id))).scalar_one_or_none()
    if not method:
        raise NotFoundError(f"Payment method not found: {method_id}")

    before = {"fee_percentage": method.fee_percentage, "is_enabled": method.is_enabled}

    if fee_percentage is not None:
        fee = Decimal(str(fee_percentage))
        if fee < 0 or fee > 100:
            raise InvalidAmount("fee_percentage must be between 0 and 100")
        method.fee_percentage = fee
    if is_enabled is not None:
        method.is_enabled = bool(is_enabled)
    method.updated_at = datetime.utcnow()

    audit_service.record(
        db,
        entity="payment_method",
        entity_id=str(method.id),
        action="updated",
        user_id=user_id,
        snapshot={
            "method_type": method.method_type,
            "before": before,
            "after": {"fee_percentage": method.fee_percentage, "is_enabled": method.is_enabled},
        },
    )
    await db.commit()
    await db.refresh(method)

    logger.info(
        "Payment method %s updated: fee=%s enabled=%s",
        method.method_type, method.fee_percentage, method.is_enabled,
    )
    return method
