"""Soft-delete ledger ("lixeira").

``archive`` snapshots an entity before its removal.  It runs inside a
savepoint of the caller's transaction: when the snapshot cannot be written
the savepoint is rolled back, the failure is logged and counted, and the
caller gets a warning while its own deletion goes ahead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import DateTime, Integer, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.config import settings
from processflow.core.clock import ensure_utc, utcnow
from processflow.core.exceptions import Forbidden, NotFound, ValidationError
from processflow.core.metrics import trash_archive_failures_total
from processflow.core.serialization import serialize_entity
from processflow.core.visibility import can_access
from processflow.models.comment import Comment
from processflow.models.company import Company
from processflow.models.company_document import CompanyDocument
from processflow.models.department import Department
from processflow.models.document import Document
from processflow.models.history import HistoryEvent
from processflow.models.process import FlowStep, Process
from processflow.models.questionnaire import Answer, Question
from processflow.models.tag import Tag, process_tags
from processflow.models.template import Template
from processflow.models.trash import TrashItem
from processflow.models.user import User

logger = logging.getLogger(__name__)

ARCHIVE_WARNING = "The item was deleted but could not be archived to the trash"

# Entity types recreated from their snapshot on restore
_RECREATED = {
    "DOCUMENT": Document,
    "TEMPLATE": Template,
    "COMPANY": Company,
    "COMMENT": Comment,
    "COMPANY_DOCUMENT": CompanyDocument,
}
# Entity types that are only deactivated on delete; restore reactivates them
_REACTIVATED = {
    "DEPARTMENT": (Department, "active"),
    "USER": (User, "is_active"),
}
# Types a non-admin may restore when they deleted the item themselves
_SELF_RESTORABLE = {"DOCUMENT", "COMMENT", "COMPANY_DOCUMENT"}


@dataclass
class ArchiveResult:
    item: TrashItem | None = None
    warning: str | None = None


def retention() -> timedelta:
    return timedelta(days=settings.TRASH_RETENTION_DAYS)


async def archive(
    db: AsyncSession,
    entity_type: str,
    entity: Any,
    actor_id: int | None,
    *,
    data: dict | None = None,
    exclude: set[str] | frozenset[str] = frozenset(),
    name: str = "",
    description: str | None = None,
    process_id: int | None = None,
    department_id: int | None = None,
    company_id: int | None = None,
    visibility: str = "PUBLIC",
    allowed_roles: list | None = None,
    allowed_user_ids: list | None = None,
    now: datetime | None = None,
) -> ArchiveResult:
    deleted_at = now or utcnow()
    try:
        async with db.begin_nested():
            snapshot = serialize_entity(entity, exclude)
            if data:
                snapshot.update(data)
            item = TrashItem(
                entity_type=entity_type,
                entity_id=entity.id,
                data=snapshot,
                name=(name or "")[:500],
                description=description,
                process_id=process_id,
                department_id=department_id,
                company_id=company_id,
                visibility=visibility or "PUBLIC",
                allowed_roles=list(allowed_roles or []),
                allowed_user_ids=list(allowed_user_ids or []),
                deleted_by_id=actor_id,
                deleted_at=deleted_at,
                expires_at=deleted_at + retention(),
            )
            db.add(item)
            await db.flush()
    except Exception:
        logger.exception("Failed to archive %s %s to the trash", entity_type, getattr(entity, "id", None))
        trash_archive_failures_total.labels(entity_type=entity_type).inc()
        return ArchiveResult(item=None, warning=ARCHIVE_WARNING)
    return ArchiveResult(item=item)


def days_until_expiry(item: TrashItem, now: datetime | None = None) -> int:
    remaining = ensure_utc(item.expires_at) - (now or utcnow())
    return max(0, remaining.days + (1 if remaining.seconds or remaining.microseconds else 0))


def can_view(item: TrashItem, actor) -> bool:
    return can_access(
        actor,
        owner_id=item.deleted_by_id,
        visibility=item.visibility,
        allowed_roles=item.allowed_roles,
        allowed_user_ids=item.allowed_user_ids,
    )


async def list_items(
    db: AsyncSession, actor, entity_type: str | None = None, now: datetime | None = None
) -> list[TrashItem]:
    query = select(TrashItem).where(TrashItem.expires_at > (now or utcnow()))
    if entity_type:
        query = query.where(TrashItem.entity_type == entity_type.upper())
    query = query.order_by(TrashItem.deleted_at.desc(), TrashItem.id.desc())
    result = await db.execute(query)
    return [item for item in result.scalars().all() if can_view(item, actor)]


async def get_item(db: AsyncSession, item_id: int, actor) -> TrashItem:
    item = await db.get(TrashItem, item_id)
    if item is None:
        raise NotFound("Trash item", item_id)
    if not can_view(item, actor):
        raise Forbidden("You do not have access to this trash item")
    return item


def _row_kwargs(model, data: dict, exclude: set[str]) -> dict:
    """Column values from a snapshot, parsing ISO timestamps back to datetimes."""
    columns = model.__table__.columns
    out: dict[str, Any] = {}
    for key, value in data.items():
        if key in exclude or key not in columns:
            continue
        if isinstance(columns[key].type, DateTime) and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif isinstance(columns[key].type, Integer) and isinstance(value, str):
            value = int(value)
        out[key] = value
    return out


_OPTIONAL_REFERENCES = {
    "question_id": Question,
    "department_id": Department,
    "company_id": Company,
    "author_id": User,
    "owner_id": User,
    "uploaded_by_id": User,
    "created_by_id": User,
    "completed_by_id": User,
    "answered_by_id": User,
    "user_id": User,
}


async def _clear_dangling(db: AsyncSession, kwargs: dict) -> None:
    """Null optional references whose target row no longer exists."""
    for key, model in _OPTIONAL_REFERENCES.items():
        ref = kwargs.get(key)
        if ref is not None and await db.get(model, ref) is None:
            kwargs[key] = None


async def _restore_process(db: AsyncSession, data: dict) -> Process:
    kwargs = _row_kwargs(Process, data, {"id", "interlinked_from_id", "interlinked_to_id", "template_id"})
    await _clear_dangling(db, kwargs)
    process = Process(**kwargs)
    db.add(process)
    await db.flush()

    for step in data.get("flow_steps") or []:
        step_kwargs = _row_kwargs(FlowStep, step, {"id", "process_id"})
        await _clear_dangling(db, step_kwargs)
        db.add(FlowStep(**step_kwargs, process_id=process.id))

    id_map: dict[int, int] = {}
    pending_conditions: list[tuple[Question, dict]] = []
    for q in data.get("questions") or []:
        question = Question(
            **_row_kwargs(Question, q, {"id", "process_id", "condition"}), process_id=process.id
        )
        db.add(question)
        await db.flush()
        id_map[q["id"]] = question.id
        if q.get("condition"):
            pending_conditions.append((question, q["condition"]))
    for question, condition in pending_conditions:
        source = id_map.get(condition.get("question_id"))
        question.condition = {**condition, "question_id": source} if source else None

    for answer in data.get("answers") or []:
        question_id = id_map.get(answer.get("question_id"), answer.get("question_id"))
        if question_id is None or await db.get(Question, question_id) is None:
            continue
        answer_kwargs = _row_kwargs(Answer, answer, {"id", "process_id", "question_id"})
        await _clear_dangling(db, answer_kwargs)
        db.add(
            Answer(
                **answer_kwargs,
                process_id=process.id,
                question_id=question_id,
            )
        )

    for doc in data.get("documents") or []:
        doc_kwargs = _row_kwargs(Document, doc, {"id", "process_id"})
        if doc_kwargs.get("question_id") is not None:
            doc_kwargs["question_id"] = id_map.get(doc_kwargs["question_id"], doc_kwargs["question_id"])
        await _clear_dangling(db, doc_kwargs)
        db.add(Document(**doc_kwargs, process_id=process.id))

    for model, key in ((Comment, "comments"), (HistoryEvent, "history")):
        for row in data.get(key) or []:
            row_kwargs = _row_kwargs(model, row, {"id", "process_id"})
            await _clear_dangling(db, row_kwargs)
            db.add(model(**row_kwargs, process_id=process.id))

    tag_ids = [int(t) for t in data.get("tag_ids") or []]
    if tag_ids:
        existing = (await db.execute(select(Tag.id).where(Tag.id.in_(tag_ids)))).scalars().all()
        if existing:
            await db.execute(
                process_tags.insert(), [{"process_id": process.id, "tag_id": t} for t in sorted(existing)]
            )
    await db.flush()
    return process


async def _restore_company_documents(db: AsyncSession, company_id: int, documents: list) -> None:
    for doc in documents or []:
        doc_kwargs = _row_kwargs(CompanyDocument, doc, {"id", "company_id"})
        await _clear_dangling(db, doc_kwargs)
        db.add(CompanyDocument(**doc_kwargs, company_id=company_id))


async def restore(db: AsyncSession, item_id: int, actor, now: datetime | None = None) -> dict:
    """Bring an archived entity back and drop its trash item."""
    item = await get_item(db, item_id, actor)
    if not actor.is_admin and not (
        item.deleted_by_id == actor.id and item.entity_type in _SELF_RESTORABLE
    ):
        raise Forbidden("Only administrators can restore this item")
    if ensure_utc(item.expires_at) <= (now or utcnow()):
        raise ValidationError("Trash item has expired and can no longer be restored")

    data = dict(item.data or {})
    entity_type = item.entity_type

    if entity_type in _REACTIVATED:
        model, flag = _REACTIVATED[entity_type]
        row = await db.get(model, item.entity_id)
        if row is None:
            raise NotFound(model.__name__, item.entity_id)
        setattr(row, flag, True)
        restored_id = row.id
    elif entity_type in _RECREATED:
        model = _RECREATED[entity_type]
        kwargs = _row_kwargs(model, data, {"id"})
        if entity_type in ("DOCUMENT", "COMMENT"):
            process_id = kwargs.get("process_id")
            if process_id is None or await db.get(Process, process_id) is None:
                raise NotFound("Process", process_id)
        elif entity_type == "COMPANY_DOCUMENT":
            company_id = kwargs.get("company_id")
            if company_id is None or await db.get(Company, company_id) is None:
                raise NotFound("Company", company_id)
        await _clear_dangling(db, kwargs)
        row = model(**kwargs)
        db.add(row)
        await db.flush()
        if entity_type == "COMPANY":
            await _restore_company_documents(db, row.id, data.get("documents"))
            await db.flush()
        restored_id = row.id
    elif entity_type == "PROCESS":
        restored_id = (await _restore_process(db, data)).id
    else:
        raise ValidationError(f"Trash items of type {entity_type} cannot be restored")

    await db.delete(item)
    await db.flush()
    return {"entity_type": entity_type, "entity_id": restored_id}


def stored_paths(item: TrashItem) -> list[str]:
    """Storage paths of the blobs an archived entity still owns."""
    data = item.data or {}
    if item.entity_type in ("DOCUMENT", "COMPANY_DOCUMENT"):
        docs = [data]
    elif item.entity_type in ("PROCESS", "COMPANY"):
        docs = data.get("documents") or []
    else:
        return []
    return [d["path"] for d in docs if isinstance(d, dict) and d.get("path")]


async def _blob_in_use(db: AsyncSession, path: str) -> bool:
    for model in (Document, CompanyDocument):
        live = await db.execute(select(func.count(model.id)).where(model.path == path))
        if live.scalar_one():
            return True
    return False


async def purge_expired(db: AsyncSession, storage=None, now: datetime | None = None) -> int:
    """Permanently delete expired trash items (and orphaned document blobs)."""
    cutoff = now or utcnow()
    result = await db.execute(select(TrashItem).where(TrashItem.expires_at <= cutoff))
    expired = list(result.scalars().all())
    if not expired:
        return 0

    for item in expired:
        for path in stored_paths(item) if storage is not None else []:
            if await _blob_in_use(db, path):
                continue
            try:
                await storage.delete(path)
            except Exception:
                logger.exception("Failed to remove stored object %s for trash item %s", path, item.id)

    await db.execute(delete(TrashItem).where(TrashItem.id.in_([i.id for i in expired])))
    return len(expired)
