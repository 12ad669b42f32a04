# FILE: bookrent/api/deps.py

import jwt
from datetime import timezone

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.database import get_db
from bookrent.core.config import JWT_SECRET, JWT_ALGORITHM
from bookrent.models.user import BACK_OFFICE_ROLES, User
from bookrent.services.errors import PaymentError
from bookrent.services.gateway import CardGateway, get_card_gateway

security = HTTPBearer(auto_error=False)


async def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: AsyncSession = Depends(get_db),
):
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = jwt.decode(
            credentials.credentials.strip(),
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
        )

        user_id = payload.get("user_id") or payload.get("id")
        if not user_id or not isinstance(user_id, str):
            raise HTTPException(status_code=401, detail="Invalid token payload")

        user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
        if not user:
            raise HTTPException(status_code=401, detail="User not found")

        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "created_at": user.created_at.replace(tzinfo=timezone.utc).isoformat(),
        }

    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def require_back_office(user=Depends(get_current_user)):
    if user["role"] not in BACK_OFFICE_ROLES:
        raise HTTPException(status_code=403, detail="Back-office access required")
    return user


def get_gateway() -> CardGateway:
    return get_card_gateway()


def http_error(exc: PaymentError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)
