"""In-app notifications for process movements."""

from __future__ import annotations

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.models.notification import Notification
from processflow.models.user import User


async def create_notification(
    db: AsyncSession,
    *,
    user_id: int,
    notif_type: str,
    title: str,
    message: str = "",
    link: str | None = None,
    process_id: int | None = None,
    actor_id: int | None = None,
) -> Notification | None:
    """Create a notification unless the recipient is the actor or inactive."""
    if actor_id is not None and actor_id == user_id:
        return None
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        return None

    notif = Notification(
        user_id=user_id,
        type=notif_type,
        title=title,
        message=message,
        link=link,
        process_id=process_id,
        actor_id=actor_id,
    )
    db.add(notif)
    await db.flush()
    return notif


async def movement_recipients(
    db: AsyncSession, department_id: int, owner_id: int | None, actor_id: int | None
) -> list[int]:
    """Active managers of ``department_id`` plus the owner, minus the actor."""
    result = await db.execute(
        select(User.id).where(
            User.department_id == department_id,
            User.role.in_(("manager", "gerente")),
            User.is_active.is_(True),
        )
    )
    ids = [row[0] for row in result.all()]
    if owner_id is not None and owner_id not in ids:
        ids.append(owner_id)
    return [uid for uid in ids if uid != actor_id]


async def notify_process_moved(
    db: AsyncSession,
    *,
    process_id: int,
    company_name: str,
    from_department: str,
    to_department_id: int,
    to_department: str,
    owner_id: int | None,
    actor_id: int | None,
) -> int:
    recipients = await movement_recipients(db, to_department_id, owner_id, actor_id)
    sent = 0
    for user_id in recipients:
        notif = await create_notification(
            db,
            user_id=user_id,
            notif_type="process_moved",
            title=f"Process #{process_id} moved to {to_department}",
            message=f"{company_name}: {from_department} -> {to_department}",
            link=f"/processes/{process_id}",
            process_id=process_id,
            actor_id=actor_id,
        )
        if notif is not None:
            sent += 1
    return sent


async def list_notifications(
    db: AsyncSession, user_id: int, unread_only: bool = False, limit: int = 50, offset: int = 0
) -> tuple[list[Notification], int]:
    query = select(Notification).where(Notification.user_id == user_id)
    count_query = select(func.count(Notification.id)).where(
        Notification.user_id == user_id, Notification.is_read.is_(False)
    )
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    unread = (await db.execute(count_query)).scalar_one()
    query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all()), unread


async def mark_read(db: AsyncSession, user_id: int, notification_id: int | None = None) -> int:
    """Mark one (or, with no id, every) notification of ``user_id`` as read."""
    stmt = update(Notification).where(
        Notification.user_id == user_id, Notification.is_read.is_(False)
    )
    if notification_id is not None:
        stmt = stmt.where(Notification.id == notification_id)
    result = await db.execute(stmt.values(is_read=True))
    return result.rowcount or 0
