"""Audit log: who changed what, field by field.

Writes are queued as post-commit effects; a failed audit write is logged
and reported as a warning but never undoes the audited change.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.models.audit_log import AuditLog

ACTION_CREATE = "CREATE"
ACTION_UPDATE = "UPDATE"
ACTION_DELETE = "DELETE"
ACTION_ADVANCE = "ADVANCE"
ACTION_FINALIZE = "FINALIZE"
ACTION_FILL = "FILL"
ACTION_ATTACH = "ATTACH"
ACTION_INTERLINK = "INTERLINK"
ACTION_RESTORE = "RESTORE"

DEFAULT_IGNORED_FIELDS = frozenset({"created_at", "updated_at", "password_hash", "password"})


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: str | None
    new_value: str | None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, sort_keys=True)


def detect_changes(
    before: dict[str, Any],
    after: dict[str, Any],
    ignore: Iterable[str] = DEFAULT_IGNORED_FIELDS,
) -> list[FieldChange]:
    """Field-level diff of two snapshots; only keys present in ``after`` count."""
    ignored = set(ignore)
    changes: list[FieldChange] = []
    for key, new in after.items():
        if key in ignored:
            continue
        old = before.get(key)
        if _as_text(old) != _as_text(new):
            changes.append(FieldChange(key, _as_text(old), _as_text(new)))
    return changes


async def record_audit(
    db: AsyncSession,
    *,
    user_id: int | None,
    action: str,
    entity: str,
    entity_id: int | None = None,
    entity_name: str | None = None,
    field: str | None = None,
    old_value: Any = None,
    new_value: Any = None,
    details: str | None = None,
    process_id: int | None = None,
    company_id: int | None = None,
    department_id: int | None = None,
    ip: str | None = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        entity_name=entity_name,
        field=field,
        old_value=_as_text(old_value),
        new_value=_as_text(new_value),
        details=details,
        process_id=process_id,
        company_id=company_id,
        department_id=department_id,
        ip=ip,
    )
    db.add(entry)
    await db.flush()
    return entry


def audit_effect(**fields: Any):
    """Build a post-commit effect that writes one audit row."""

    async def _run(db: AsyncSession) -> None:
        await record_audit(db, **fields)

    return _run


def audit_changes_effect(changes: list[FieldChange], **fields: Any):
    """Build a post-commit effect that writes one audit row per changed field."""

    async def _run(db: AsyncSession) -> None:
        for change in changes:
            await record_audit(
                db,
                field=change.field,
                old_value=change.old_value,
                new_value=change.new_value,
                **fields,
            )

    return _run


async def list_audit_logs(
    db: AsyncSession,
    entity: str | None = None,
    entity_id: int | None = None,
    process_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditLog]:
    query = select(AuditLog)
    if entity:
        query = query.where(AuditLog.entity == entity)
    if entity_id is not None:
        query = query.where(AuditLog.entity_id == entity_id)
    if process_id is not None:
        query = query.where(AuditLog.process_id == process_id)
    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())
