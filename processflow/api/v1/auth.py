from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user
from processflow.core.clock import utcnow
from processflow.core.permissions import actor_from_user, effective_permissions
from processflow.core.rate_limit import limiter
from processflow.core.security import create_access_token, verify_password
from processflow.database import get_db
from processflow.models.user import User
from processflow.schemas.auth import LoginRequest, TokenResponse
from processflow.services.user_cache import CurrentUser

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def _me(user: CurrentUser) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "department_id": user.department_id,
        "is_active": user.is_active,
        # Department-scoped actions are evaluated against the user's own department
        "permissions": effective_permissions(
            actor_from_user(user), current_department=user.department_id
        ),
    }


@router.post("/login", response_model=TokenResponse)
@limiter.limit("10/minute")
async def login(request: Request, body: LoginRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(func.lower(User.email) == body.email.lower()))
    user = result.scalar_one_or_none()
    if user is None or not verify_password(body.password, user.password_hash or ""):
        logger.info("Failed login for %s", body.email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")

    user.last_login_at = utcnow()
    await db.commit()
    current = CurrentUser.from_model(user)
    return TokenResponse(
        access_token=create_access_token(user.id, user.role),
        user=_me(current),
    )


@router.get("/me")
async def me(user: CurrentUser = Depends(get_current_user)):
    return _me(user)
