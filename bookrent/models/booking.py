# /bookrent/models/booking.py
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Numeric, DateTime

from bookrent.core.database import Base


class Booking(Base):
    """Booking row owned by the booking subsystem.

    The payment core only writes ``amount_paid``,
    ``security_deposit_authorization_id`` and ``security_deposit_authorized_at``,
    and only from the reconciler.
    """
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    reference_code: Mapped[str] = mapped_column(String(40), unique=True, index=True)

    # Status: draft, to_be_confirmed, confirmed, ongoing, completed, cancelled
    status: Mapped[str] = mapped_column(String(30), default="to_be_confirmed")

    client_name: Mapped[str] = mapped_column(String(190))
    client_email: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    amount_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    security_deposit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))

    # Down payment share requested on the first client payment (0 = full amount)
    payment_amount_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)

    security_deposit_authorization_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    security_deposit_authorized_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Client portal access token
    access_token: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
