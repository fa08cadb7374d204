from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user
from processflow.core.exceptions import Forbidden, NotFound
from processflow.core.permissions import Action, actor_from_user, can_perform
from processflow.database import get_db
from processflow.models.comment import Comment
from processflow.schemas.social import CommentCreate, CommentUpdate
from processflow.services import flow_service, history_service, trash_service
from processflow.services.user_cache import CurrentUser

router = APIRouter(tags=["comments"])


def _comment_to_dict(c: Comment) -> dict:
    return {
        "id": c.id,
        "process_id": c.process_id,
        "author_id": c.author_id,
        "department_id": c.department_id,
        "text": c.text,
        "edited": c.edited,
        "created_at": c.created_at.isoformat() if c.created_at else None,
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }


async def _get_comment(db: AsyncSession, comment_id: int) -> Comment:
    comment = await db.get(Comment, comment_id)
    if comment is None:
        raise NotFound("Comment", comment_id)
    return comment


@router.get("/processes/{process_id}/comments")
async def list_comments(
    process_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    await flow_service.load_process(db, process_id)
    result = await db.execute(
        select(Comment).where(Comment.process_id == process_id).order_by(Comment.created_at, Comment.id)
    )
    return [_comment_to_dict(c) for c in result.scalars().all()]


@router.post("/processes/{process_id}/comments", status_code=201)
async def create_comment(
    process_id: int,
    body: CommentCreate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    if not can_perform(actor_from_user(user), Action.COMMENT):
        raise Forbidden("You cannot comment on processes")
    process = await flow_service.load_process(db, process_id)
    department_id = body.department_id or process.current_department_id
    comment = Comment(process_id=process_id, author_id=user.id, department_id=department_id, text=body.text)
    db.add(comment)
    await db.flush()
    await history_service.record_event(
        db,
        process_id,
        history_service.EVENT_COMMENT,
        f"{user.name} commented",
        user_id=user.id,
        department_id=department_id,
        details={"comment_id": comment.id},
    )
    await db.commit()
    return _comment_to_dict(comment)


@router.patch("/comments/{comment_id}")
async def update_comment(
    comment_id: int,
    body: CommentUpdate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    comment = await _get_comment(db, comment_id)
    if comment.author_id != user.id:
        raise Forbidden("Only the author can edit a comment")
    comment.text = body.text
    comment.edited = True
    await db.commit()
    return _comment_to_dict(comment)


@router.delete("/comments/{comment_id}")
async def delete_comment(
    comment_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    comment = await _get_comment(db, comment_id)
    if comment.author_id != user.id and not user.is_admin:
        raise Forbidden("Only the author or an administrator can delete a comment")
    archived = await trash_service.archive(
        db,
        "COMMENT",
        comment,
        user.id,
        name=comment.text[:80],
        process_id=comment.process_id,
        department_id=comment.department_id,
    )
    await db.delete(comment)
    await db.commit()
    return {"message": "Comment moved to the trash", "warning": archived.warning}
