# /bookrent/models/payment.py
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, ForeignKey, DateTime, Numeric, Text

from bookrent.core.database import Base


class PaymentIntent(str, enum.Enum):
    CLIENT_PAYMENT = "client_payment"
    BALANCE_PAYMENT = "balance_payment"
    SECURITY_DEPOSIT = "security_deposit"


class LinkStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"


OPEN_LINK_STATUSES = {LinkStatus.PENDING.value, LinkStatus.ACTIVE.value}
TERMINAL_LINK_STATUSES = {
    LinkStatus.PAID.value,
    LinkStatus.EXPIRED.value,
    LinkStatus.CANCELLED.value,
    LinkStatus.FAILED.value,
}


class Payment(Base):
    """Payment link / instruction records. Never deleted."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), index=True)

    # Base amount, in the booking (source) currency
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="EUR")

    payment_intent: Mapped[str] = mapped_column(String(30))
    payment_method_type: Mapped[str] = mapped_column(String(30))

    # Frozen at creation time
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    converted_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    conversion_rate_used: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 6), nullable=True)

    # Currency actually charged (settlement currency when converted)
    final_currency: Mapped[str] = mapped_column(String(3), default="EUR")

    payment_link_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    # Status: pending, active, paid, expired, cancelled, failed
    payment_link_status: Mapped[str] = mapped_column(String(20), default=LinkStatus.PENDING.value, index=True)
    payment_link_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Gateway checkout session id / transaction id
    gateway_session_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, index=True)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, index=True)

    proof_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
