# FILE: bookrent/api/auth.py
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.database import get_db
from bookrent.models.user import User
from bookrent.schemas.auth import UserLogin, TokenResponse, UserResponse
from bookrent.services.auth_service import verify_password, create_token
from bookrent.api.deps import get_current_user

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(data: UserLogin, db: AsyncSession = Depends(get_db)):
    user = (await db.execute(select(User).where(User.email == data.email))).scalar_one_or_none()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    return TokenResponse(
        token=create_token(user.id, user.email, user.role),
        user=UserResponse(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            created_at=user.created_at.replace(tzinfo=timezone.utc).isoformat(),
        ),
    )


@router.get("/me", response_model=UserResponse)
async def auth_me(user=Depends(get_current_user)):
    return UserResponse(**user)
