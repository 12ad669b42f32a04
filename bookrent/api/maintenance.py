# FILE: bookrent/api/maintenance.py
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.api.deps import require_back_office
from bookrent.core.database import get_db
from bookrent.schemas.payments import GatewayEventResponse
from bookrent.services import reconciler, security_deposits

router = APIRouter(prefix="/api/admin", tags=["maintenance"])


@router.post("/maintenance/expire")
async def expire_stale(user=Depends(require_back_office), db: AsyncSession = Depends(get_db)):
    """Persist expiry of links and holds whose deadline has passed."""
    return {
        "expired_links": await reconciler.expire_stale_links(db),
        "expired_deposits": await security_deposits.expire_stale_holds(db),
    }


@router.get("/gateway-events", response_model=List[GatewayEventResponse])
async def list_gateway_events(
    limit: int = 100,
    user=Depends(require_back_office),
    db: AsyncSession = Depends(get_db),
):
    return await reconciler.list_events(db, limit=limit)
