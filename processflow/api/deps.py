from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.config import settings
from processflow.core.exceptions import Forbidden
from processflow.core.permissions import Action, actor_from_user, can_perform
from processflow.core.security import decode_access_token
from processflow.database import get_db
from processflow.models.user import User
from processflow.services.storage import LocalStorage, StorageBackend
from processflow.services.user_cache import CurrentUser, TTLUserCache, UserCache


@lru_cache
def _default_user_cache() -> TTLUserCache:
    return TTLUserCache(ttl_seconds=settings.AUTH_USER_CACHE_TTL_SECONDS)


@lru_cache
def _default_storage() -> LocalStorage:
    return LocalStorage(settings.STORAGE_ROOT)


def get_user_cache() -> UserCache:
    return _default_user_cache()


def get_storage() -> StorageBackend:
    return _default_storage()


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: UserCache = Depends(get_user_cache),
) -> CurrentUser:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_access_token(auth[7:])
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired token") from None

    cached = cache.get(user_id)
    if cached is not None:
        request.state.current_user = cached
        return cached

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    current = CurrentUser.from_model(user)
    cache.put(user_id, current)
    request.state.current_user = current
    return current


def require_permission(action: Action):
    """Dependency factory for actions that need no target context."""

    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not can_perform(actor_from_user(user), action):
            raise Forbidden(f"Permission denied: {action.value}")
        return user

    return _check


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def split_form_list(raw: str | None) -> list[str]:
    """Comma-separated multipart field as a list of non-empty items."""
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]
