from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user
from processflow.core.exceptions import NotFound
from processflow.database import get_db
from processflow.models.notification import Notification
from processflow.services import notification_service
from processflow.services.user_cache import CurrentUser

router = APIRouter()


def _notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "link": n.link,
        "is_read": n.is_read,
        "process_id": n.process_id,
        "actor_id": n.actor_id,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


@router.get("")
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    items, unread = await notification_service.list_notifications(
        db, user.id, unread_only=unread_only, limit=limit, offset=offset
    )
    return {"items": [_notification_to_dict(n) for n in items], "unread_count": unread}


@router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    notif = await db.get(Notification, notification_id)
    if notif is None or notif.user_id != user.id:
        raise NotFound("Notification", notification_id)
    await notification_service.mark_read(db, user.id, notification_id)
    await db.commit()
    return {"id": notification_id, "is_read": True}


@router.post("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    updated = await notification_service.mark_read(db, user.id)
    await db.commit()
    return {"updated": updated}
