# /bookrent/models/conversion_rate.py
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Numeric, Integer, DateTime, Index

from bookrent.core.database import Base


class ConversionRate(Base):
    """Append-only currency conversion rates."""
    __tablename__ = "currency_conversion_rates"
    __table_args__ = (
        Index("ix_conversion_rates_pair_date", "from_currency", "to_currency", "effective_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_currency: Mapped[str] = mapped_column(String(3))
    to_currency: Mapped[str] = mapped_column(String(3))
    rate: Mapped[Decimal] = mapped_column(Numeric(12, 6))
    effective_date: Mapped[datetime] = mapped_column(DateTime)

    # Source: manual, api, system
    source: Mapped[str] = mapped_column(String(20), default="manual")
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
