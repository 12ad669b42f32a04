# FILE: bookrent/services/audit_service.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.models.audit_log import AuditLog


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def record(
    db: AsyncSession,
    entity: str,
    entity_id: str,
    action: str,
    snapshot: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction."""
    entry = AuditLog(
        entity=entity,
        entity_id=str(entity_id),
        action=action,
        user_id=user_id,
        payload_snapshot=_jsonable(snapshot or {}),
        created_at=datetime.utcnow(),
    )
    db.add(entry)
    return entry
