# /bookrent/models/audit_log.py
from datetime import datetime
from typing import Optional, Any
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, JSON

from bookrent.core.database import Base


class AuditLog(Base):
    """Audit trail of money-related actions."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Entity: payment, payment_method, currency_conversion, security_deposit_authorization
    entity: Mapped[str] = mapped_column(String(50), index=True)
    entity_id: Mapped[str] = mapped_column(String(64), index=True)
    action: Mapped[str] = mapped_column(String(50))

    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    payload_snapshot: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
