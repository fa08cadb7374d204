from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user, require_permission
from processflow.core.exceptions import ConflictError, NotFound
from processflow.core.permissions import Action
from processflow.database import get_db
from processflow.models.tag import Tag, process_tags
from processflow.schemas.social import TagCreate
from processflow.services import flow_service, history_service
from processflow.services.user_cache import CurrentUser

router = APIRouter(tags=["tags"])


def _tag_to_dict(t: Tag) -> dict:
    return {"id": t.id, "name": t.name, "color": t.color}


async def _get_tag(db: AsyncSession, tag_id: int) -> Tag:
    tag = await db.get(Tag, tag_id)
    if tag is None:
        raise NotFound("Tag", tag_id)
    return tag


async def _is_applied(db: AsyncSession, process_id: int, tag_id: int) -> bool:
    result = await db.execute(
        select(func.count()).select_from(process_tags).where(
            process_tags.c.process_id == process_id, process_tags.c.tag_id == tag_id
        )
    )
    return result.scalar_one() > 0


@router.get("/tags")
async def list_tags(
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(select(Tag).order_by(Tag.name))
    return [_tag_to_dict(t) for t in result.scalars().all()]


@router.post("/tags", status_code=201)
async def create_tag(
    body: TagCreate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_TAGS)),
):
    name = body.name.strip()
    existing = await db.execute(select(Tag.id).where(func.lower(Tag.name) == name.lower()))
    if existing.first() is not None:
        raise ConflictError("Tag", "name", name)
    tag = Tag(name=name, color=body.color)
    db.add(tag)
    await db.commit()
    return _tag_to_dict(tag)


@router.delete("/tags/{tag_id}")
async def delete_tag(
    tag_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_TAGS)),
):
    tag = await _get_tag(db, tag_id)
    await db.delete(tag)
    await db.commit()
    return {"message": "Tag deleted"}


@router.post("/processes/{process_id}/tags/{tag_id}")
async def apply_tag(
    process_id: int,
    tag_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.APPLY_TAGS)),
):
    process = await flow_service.load_process(db, process_id)
    tag = await _get_tag(db, tag_id)
    if not await _is_applied(db, process_id, tag_id):
        await db.execute(process_tags.insert().values(process_id=process_id, tag_id=tag_id))
        await history_service.record_event(
            db,
            process_id,
            history_service.EVENT_TAG,
            f"Tag {tag.name} added",
            user_id=user.id,
            department_id=process.current_department_id,
            details={"tag_id": tag_id, "added": True},
        )
        await db.commit()
    return {"process_id": process_id, "tag": _tag_to_dict(tag)}


@router.delete("/processes/{process_id}/tags/{tag_id}")
async def remove_tag(
    process_id: int,
    tag_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.APPLY_TAGS)),
):
    process = await flow_service.load_process(db, process_id)
    tag = await _get_tag(db, tag_id)
    if await _is_applied(db, process_id, tag_id):
        await db.execute(
            delete(process_tags).where(process_tags.c.process_id == process_id, process_tags.c.tag_id == tag_id)
        )
        await history_service.record_event(
            db,
            process_id,
            history_service.EVENT_TAG,
            f"Tag {tag.name} removed",
            user_id=user.id,
            department_id=process.current_department_id,
            details={"tag_id": tag_id, "added": False},
        )
        await db.commit()
    return {"process_id": process_id, "removed": tag_id}
