from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import client_ip, get_user_cache, require_permission
from processflow.core.exceptions import ConflictError, NotFound, ValidationError
from processflow.core.permissions import Action
from processflow.core.security import hash_password
from processflow.database import get_db
from processflow.models.department import Department
from processflow.models.user import User
from processflow.schemas.admin import UserCreate, UserUpdate
from processflow.services import audit_service, trash_service
from processflow.services.effects import PostCommitEffects
from processflow.services.user_cache import CurrentUser, UserCache

router = APIRouter()
logger = logging.getLogger(__name__)

_FIELDS = ("name", "email", "role", "department_id", "is_active")
_SECRET_FIELDS = frozenset({"password_hash"})


def _user_to_dict(u: User) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "role": u.role,
        "department_id": u.department_id,
        "is_active": u.is_active,
        "last_login_at": u.last_login_at.isoformat() if u.last_login_at else None,
        "created_at": u.created_at.isoformat() if u.created_at else None,
    }


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User", user_id)
    return user


async def _check_email(db: AsyncSession, email: str, exclude_id: int | None = None) -> str:
    email = email.lower()
    query = select(User.id).where(func.lower(User.email) == email)
    if exclude_id is not None:
        query = query.where(User.id != exclude_id)
    if (await db.execute(query)).first() is not None:
        raise ConflictError("User", "email", email)
    return email


async def _check_department(db: AsyncSession, department_id: int | None) -> None:
    if department_id is not None and await db.get(Department, department_id) is None:
        raise NotFound("Department", department_id)


async def _active_admins(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(User.id)).where(User.role == "admin", User.is_active.is_(True))
    )
    return result.scalar_one()


async def _guard_last_admin(db: AsyncSession, user: User) -> None:
    if user.role == "admin" and user.is_active and await _active_admins(db) <= 1:
        raise ValidationError("Cannot remove or demote the last active administrator")


@router.get("")
async def list_users(
    department_id: int | None = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_USERS)),
):
    query = select(User)
    if department_id is not None:
        query = query.where(User.department_id == department_id)
    if not include_inactive:
        query = query.where(User.is_active.is_(True))
    result = await db.execute(query.order_by(User.name))
    return [_user_to_dict(u) for u in result.scalars().all()]


@router.get("/{user_id}")
async def get_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_USERS)),
):
    return _user_to_dict(await _get_user(db, user_id))


@router.post("", status_code=201)
async def create_user(
    body: UserCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_USERS)),
):
    email = await _check_email(db, body.email)
    await _check_department(db, body.department_id)
    new_user = User(
        name=body.name,
        email=email,
        password_hash=hash_password(body.password),
        role=body.role,
        department_id=body.department_id,
    )
    db.add(new_user)
    await db.commit()
    data = _user_to_dict(new_user)

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=user.id,
            action=audit_service.ACTION_CREATE,
            entity="USER",
            entity_id=new_user.id,
            entity_name=new_user.name,
            department_id=new_user.department_id,
            ip=client_ip(request),
        ),
    )
    data["warnings"] = await effects.dispatch(db)
    return data


@router.patch("/{user_id}")
async def update_user(
    user_id: int,
    body: UserUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_USERS)),
    cache: UserCache = Depends(get_user_cache),
):
    target = await _get_user(db, user_id)
    changes = body.model_dump(exclude_unset=True)
    password = changes.pop("password", None)
    # Only department_id may be cleared explicitly
    changes = {k: v for k, v in changes.items() if v is not None or k == "department_id"}

    if "email" in changes:
        changes["email"] = await _check_email(db, changes["email"], exclude_id=target.id)
    if "department_id" in changes:
        await _check_department(db, changes["department_id"])
    demoting = changes.get("role", target.role) != "admin" or changes.get("is_active") is False
    if demoting:
        await _guard_last_admin(db, target)

    before = {k: getattr(target, k) for k in _FIELDS}
    for key, value in changes.items():
        setattr(target, key, value)
    if password:
        target.password_hash = hash_password(password)
    diff = audit_service.detect_changes(before, {k: getattr(target, k) for k in changes})
    await db.commit()
    cache.invalidate(target.id)
    data = _user_to_dict(target)

    effects = PostCommitEffects()
    if diff or password:
        effects.add(
            "audit",
            audit_service.audit_changes_effect(
                diff or [audit_service.FieldChange("password", None, None)],
                user_id=user.id,
                action=audit_service.ACTION_UPDATE,
                entity="USER",
                entity_id=target.id,
                entity_name=target.name,
                ip=client_ip(request),
            ),
        )
    data["warnings"] = await effects.dispatch(db)
    return data


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    request: Request,
    permanent: bool = False,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_USERS)),
    cache: UserCache = Depends(get_user_cache),
):
    """Deactivate a user (default) or, with ``permanent``, delete the row.

    Either way a password-free snapshot goes to the trash first.
    """
    if user_id == user.id:
        raise ValidationError("You cannot delete your own account")
    target = await _get_user(db, user_id)
    await _guard_last_admin(db, target)

    name = target.name
    archived = await trash_service.archive(
        db,
        "USER",
        target,
        user.id,
        exclude=_SECRET_FIELDS,
        name=name,
        description=target.email,
        department_id=target.department_id,
    )
    if permanent:
        await db.delete(target)
    else:
        target.is_active = False
    await db.commit()
    cache.invalidate(user_id)
    logger.info("User %s %s by %s", user_id, "deleted" if permanent else "deactivated", user.id)

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=user.id,
            action=audit_service.ACTION_DELETE,
            entity="USER",
            entity_id=user_id,
            entity_name=name,
            details="permanent" if permanent else "deactivated",
            ip=client_ip(request),
        ),
    )
    warnings = await effects.dispatch(db)
    return {
        "message": "User deleted" if permanent else "User deactivated",
        "warning": archived.warning,
        "warnings": ([archived.warning] if archived.warning else []) + warnings,
    }
