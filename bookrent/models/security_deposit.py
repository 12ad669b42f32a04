# /bookrent/models/security_deposit.py
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, ForeignKey, DateTime, Numeric, Integer, Text

from bookrent.core.database import Base


class DepositStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    RELEASED = "released"
    CAPTURED = "captured"
    EXPIRED = "expired"


class SecurityDepositAuthorization(Base):
    """Refundable card holds taken before delivery."""
    __tablename__ = "security_deposit_authorizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), index=True)

    # Card-authorization payment that carries the gateway session
    payment_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("payments.id", ondelete="SET NULL"), nullable=True, index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="EUR")

    # Status: pending, authorized, released, captured, expired
    status: Mapped[str] = mapped_column(String(20), default=DepositStatus.PENDING.value, index=True)

    # Lifetime of the hold, applied again from authorized_at on confirmation
    hold_hours: Mapped[int] = mapped_column(Integer)

    authorized_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    captured_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    capture_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
