# /bookrent/models/gateway_event.py
from datetime import datetime
from typing import Optional, Any
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, JSON, Text

from bookrent.core.database import Base


class GatewayEvent(Base):
    """Inbound webhook deliveries and admin syncs, recorded before they are applied."""
    __tablename__ = "gateway_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Source: stripe, listener, sync
    source: Mapped[str] = mapped_column(String(20))
    external_event_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, index=True)

    # Gateway session / transaction id the event refers to
    reference: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, index=True)

    # State: completed, failed, expired
    state: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    occurred_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    # Status: received, applied, ignored, failed
    status: Mapped[str] = mapped_column(String(20), default="received")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
