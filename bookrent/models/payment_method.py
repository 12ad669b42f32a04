# /bookrent/models/payment_method.py
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Numeric, Boolean, Integer, DateTime, Text

from bookrent.core.database import Base


class PaymentMethodType(str, enum.Enum):
    VISA_MASTERCARD = "visa_mastercard"
    AMEX = "amex"
    BANK_TRANSFER = "bank_transfer"
    MANUAL = "manual"


CARD_METHOD_TYPES = {PaymentMethodType.VISA_MASTERCARD.value, PaymentMethodType.AMEX.value}


class PaymentMethod(Base):
    """Configured payment methods (fees, settlement currency, visibility)."""
    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    method_type: Mapped[str] = mapped_column(String(30), unique=True)
    display_name: Mapped[str] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Percentage on top of the base amount (3.5 = 3.5 %)
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))

    # Currency the gateway settles in (EUR, CHF, ...)
    settlement_currency: Mapped[str] = mapped_column(String(3), default="EUR")
    requires_conversion: Mapped[bool] = mapped_column(Boolean, default=False)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    admin_only: Mapped[bool] = mapped_column(Boolean, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
