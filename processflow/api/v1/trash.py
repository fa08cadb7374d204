from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user, get_storage, get_user_cache
from processflow.core.exceptions import Forbidden
from processflow.database import get_db
from processflow.models.trash import TrashItem
from processflow.services import audit_service, trash_service
from processflow.services.effects import PostCommitEffects
from processflow.services.storage import StorageBackend
from processflow.services.user_cache import CurrentUser, UserCache

router = APIRouter()
logger = logging.getLogger(__name__)


def _item_to_dict(item: TrashItem, include_data: bool = False) -> dict:
    data = {
        "id": item.id,
        "entity_type": item.entity_type,
        "entity_id": item.entity_id,
        "name": item.name,
        "description": item.description,
        "process_id": item.process_id,
        "department_id": item.department_id,
        "company_id": item.company_id,
        "visibility": item.visibility,
        "deleted_by_id": item.deleted_by_id,
        "deleted_at": item.deleted_at.isoformat() if item.deleted_at else None,
        "expires_at": item.expires_at.isoformat() if item.expires_at else None,
        "days_until_expiry": trash_service.days_until_expiry(item),
    }
    if include_data:
        data["data"] = item.data
    return data


@router.get("")
async def list_trash(
    entity_type: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    items = await trash_service.list_items(db, user, entity_type=entity_type)
    return [_item_to_dict(i) for i in items]


@router.get("/{item_id}")
async def get_trash_item(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return _item_to_dict(await trash_service.get_item(db, item_id, user), include_data=True)


@router.post("/{item_id}/restore")
async def restore_trash_item(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    cache: UserCache = Depends(get_user_cache),
):
    restored = await trash_service.restore(db, item_id, user)
    await db.commit()
    if restored["entity_type"] == "USER":
        cache.invalidate(restored["entity_id"])

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=user.id,
            action=audit_service.ACTION_RESTORE,
            entity=restored["entity_type"],
            entity_id=restored["entity_id"],
            process_id=restored["entity_id"] if restored["entity_type"] == "PROCESS" else None,
        ),
    )
    warnings = await effects.dispatch(db)
    return {**restored, "warnings": warnings}


@router.post("/purge")
async def purge_trash(
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    storage: StorageBackend = Depends(get_storage),
):
    """Drop every expired trash item now instead of waiting for the background sweep."""
    if not user.is_admin:
        raise Forbidden("Only administrators can purge the trash")
    purged = await trash_service.purge_expired(db, storage)
    await db.commit()
    logger.info("Trash purge by user %s removed %d items", user.id, purged)
    return {"purged": purged}
