"""Flow state machine.

A process is ``in_progress`` at ``department_flow[current_department_index]``
until it is finalized at the last department.  Every transition runs inside
the caller's transaction with the process row locked (``SELECT ... FOR
UPDATE``), so two actors advancing the same process are serialized and the
loser re-reads the new index.  Notifications, audit rows and metrics are
returned as post-commit effects.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.core.clock import utcnow
from processflow.core.exceptions import Forbidden, InvalidTransition, NotFound, ValidationError
from processflow.core.metrics import workflow_transitions_total
from processflow.core.permissions import (
    Action,
    DepartmentContext,
    FinalizeContext,
    Role,
    actor_from_user,
    can_perform,
    is_department_id,
)
from processflow.core.serialization import serialize_entity
from processflow.models.comment import Comment
from processflow.models.company import Company
from processflow.models.department import Department
from processflow.models.document import Document
from processflow.models.history import HistoryEvent
from processflow.models.process import (
    STATUS_FINALIZED,
    STATUS_IN_PROGRESS,
    STEP_COMPLETED,
    STEP_IN_PROGRESS,
    FlowStep,
    Process,
)
from processflow.models.questionnaire import Answer, Question
from processflow.models.tag import Tag, process_tags
from processflow.models.template import Template
from processflow.schemas.process import ProcessCreate
from processflow.services import audit_service, history_service, notification_service, trash_service
from processflow.services.effects import PostCommitEffects
from processflow.services.questionnaire_service import materialize_questions

logger = logging.getLogger(__name__)

AUDIT_WARNING = "Audit entry could not be recorded"
NOTIFY_WARNING = "Notifications could not be sent"


def compute_progress(index: int, flow_length: int) -> int:
    """Percentage of the flow reached at ``index``, rounded half up."""
    if flow_length <= 0:
        return 0
    index = max(0, min(index, flow_length - 1))
    return (200 * (index + 1) + flow_length) // (2 * flow_length)


def checked_flow(process: Process) -> list[int]:
    """The process's department flow, or InvalidTransition when unusable."""
    flow = process.department_flow
    if not isinstance(flow, list) or not flow or not all(is_department_id(d) for d in flow):
        raise InvalidTransition(f"Process {process.id} has an empty or malformed department flow")
    index = process.current_department_index
    if not isinstance(index, int) or not 0 <= index < len(flow):
        raise InvalidTransition(
            f"Process {process.id} position {index!r} is outside its department flow"
        )
    return flow


def _validated_new_flow(raw: Any) -> list[int]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("A process needs at least one department in its flow")
    if not all(is_department_id(d) for d in raw):
        raise ValidationError("Department flow must contain positive integer department ids")
    return list(raw)


def _count(kind: str):
    async def _run(db: AsyncSession) -> None:
        workflow_transitions_total.labels(kind=kind).inc()

    return _run


async def load_process(db: AsyncSession, process_id: int, for_update: bool = False) -> Process:
    query = select(Process).where(Process.id == process_id)
    if for_update:
        query = query.with_for_update()
    process = (await db.execute(query)).scalar_one_or_none()
    if process is None:
        raise NotFound("Process", process_id)
    return process


async def _departments(db: AsyncSession, ids: list[int]) -> dict[int, Department]:
    result = await db.execute(select(Department).where(Department.id.in_(set(ids))))
    return {d.id: d for d in result.scalars().all()}


async def _department_name(db: AsyncSession, department_id: int | None) -> str:
    if department_id is None:
        return "no department"
    dept = await db.get(Department, department_id)
    return dept.name if dept else f"department #{department_id}"


async def _close_open_steps(db: AsyncSession, process_id: int, actor_id: int, now) -> list[FlowStep]:
    result = await db.execute(
        select(FlowStep).where(FlowStep.process_id == process_id, FlowStep.status == STEP_IN_PROGRESS)
    )
    steps = list(result.scalars().all())
    for step in steps:
        step.status = STEP_COMPLETED
        step.exited_at = now
        step.completed_by_id = actor_id
    return steps


# ── Create ──────────────────────────────────────────────────────────


async def create_process(
    db: AsyncSession, actor, data, *, interlinked_from: Process | None = None
) -> tuple[Process, PostCommitEffects]:
    """Create a process from a template or an explicit custom flow.

    ``data`` is a ``ProcessCreate`` (or anything with the same attributes).
    """
    actor_ref = actor_from_user(actor)
    if actor_ref is None:
        raise Forbidden("Authentication required")

    template: Template | None = None
    questionnaires = dict(getattr(data, "questionnaires", None) or {})
    if data.template_id is not None:
        if not can_perform(actor_ref, Action.CREATE_PROCESS):
            raise Forbidden("You cannot create processes")
        template = await db.get(Template, data.template_id)
        if template is None:
            raise NotFound("Template", data.template_id)
        flow = _validated_new_flow(template.department_flow)
        if not questionnaires:
            questionnaires = dict(template.questionnaires_by_department or {})
    else:
        if not can_perform(actor_ref, Action.CREATE_CUSTOM_PROCESS):
            raise Forbidden("Only managers and administrators can create processes with a custom flow")
        flow = _validated_new_flow(data.department_flow)

    departments = await _departments(db, flow)
    for dept_id in flow:
        if dept_id not in departments:
            raise NotFound("Department", dept_id)
        if not departments[dept_id].active:
            raise ValidationError(f"Department {dept_id} is inactive")

    if actor_ref.role is not Role.ADMIN and flow[0] != actor_ref.department_id:
        raise Forbidden("A process must start in your own department")

    company: Company | None = None
    if data.company_id is not None:
        company = await db.get(Company, data.company_id)
        if company is None:
            raise NotFound("Company", data.company_id)
    company_name = (data.company_name or (company.name if company else "") or "").strip()
    if not company_name:
        raise ValidationError("company_name or company_id is required")

    now = utcnow()
    process = Process(
        company_name=company_name,
        company_id=company.id if company else None,
        cnpj=data.cnpj or (company.cnpj if company else None),
        contact_name=data.contact_name,
        email=data.email or (company.email if company else None),
        phone=data.phone or (company.phone if company else None),
        service=data.service,
        description=getattr(data, "description", None),
        notes=getattr(data, "notes", None),
        priority=data.priority,
        due_at=getattr(data, "due_at", None),
        status=STATUS_IN_PROGRESS,
        department_flow=flow,
        current_department_index=0,
        current_department_id=flow[0],
        progress=compute_progress(0, len(flow)),
        independent_departments=bool(getattr(data, "independent_departments", False)),
        owner_id=actor_ref.id,
        template_id=template.id if template else None,
        interlinked_from_id=interlinked_from.id if interlinked_from else None,
        started_at=now,
    )
    db.add(process)
    await db.flush()

    db.add(
        FlowStep(
            process_id=process.id,
            department_id=flow[0],
            order=0,
            status=STEP_IN_PROGRESS,
            entered_at=now,
        )
    )
    await materialize_questions(db, process.id, questionnaires, flow)

    tag_ids = list(getattr(data, "tag_ids", None) or [])
    if tag_ids:
        found = (await db.execute(select(Tag.id).where(Tag.id.in_(tag_ids)))).scalars().all()
        missing = set(tag_ids) - set(found)
        if missing:
            raise NotFound("Tag", min(missing))
        await db.execute(
            process_tags.insert(), [{"process_id": process.id, "tag_id": t} for t in sorted(set(tag_ids))]
        )

    await history_service.record_event(
        db,
        process.id,
        history_service.EVENT_START,
        f"Process created in {departments[flow[0]].name}",
        user_id=actor_ref.id,
        department_id=flow[0],
        details={"department_flow": flow, "template_id": process.template_id},
    )

    logger.info(
        "process %s created by user %s with flow %s",
        process.id,
        actor_ref.id,
        flow,
        extra={"process_id": process.id, "user_id": actor_ref.id},
    )

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=actor_ref.id,
            action=audit_service.ACTION_CREATE,
            entity="PROCESS",
            entity_id=process.id,
            entity_name=process.company_name,
            process_id=process.id,
            company_id=process.company_id,
            department_id=flow[0],
        ),
        warning=AUDIT_WARNING,
    )
    effects.add("metrics", _count("create"))
    return process, effects


# ── Advance ─────────────────────────────────────────────────────────


async def advance_process(db: AsyncSession, process_id: int, actor) -> tuple[Process, PostCommitEffects]:
    process = await load_process(db, process_id, for_update=True)
    actor_ref = actor_from_user(actor)

    context = DepartmentContext(current_department=process.current_department_id)
    if not can_perform(actor_ref, Action.MOVE_PROCESS, context):
        raise Forbidden("You cannot move this process from its current department")
    if process.status == STATUS_FINALIZED:
        raise InvalidTransition(f"Process {process.id} is already finalized")

    flow = checked_flow(process)
    next_index = process.current_department_index + 1
    if next_index >= len(flow):
        raise InvalidTransition(f"Process {process.id} is already at the last department")

    next_department = await db.get(Department, flow[next_index])
    if next_department is None:
        raise NotFound("Department", flow[next_index])

    source_id = process.current_department_id
    source_name = await _department_name(db, source_id)
    now = utcnow()

    process.current_department_index = next_index
    process.current_department_id = next_department.id
    process.progress = compute_progress(next_index, len(flow))
    process.updated_at = now

    await _close_open_steps(db, process.id, actor_ref.id, now)
    db.add(
        FlowStep(
            process_id=process.id,
            department_id=next_department.id,
            order=next_index,
            status=STEP_IN_PROGRESS,
            entered_at=now,
        )
    )
    await history_service.record_event(
        db,
        process.id,
        history_service.EVENT_MOVEMENT,
        f"Moved from {source_name} to {next_department.name}",
        user_id=actor_ref.id,
        department_id=next_department.id,
        details={
            "from_department_id": source_id,
            "to_department_id": next_department.id,
            "from_index": next_index - 1,
            "to_index": next_index,
        },
    )

    logger.info(
        "process %s moved from %s to %s by user %s",
        process.id,
        source_id,
        next_department.id,
        actor_ref.id,
        extra={"process_id": process.id, "user_id": actor_ref.id, "department_id": next_department.id},
    )

    fields = {
        "process_id": process.id,
        "company_name": process.company_name,
        "from_department": source_name,
        "to_department_id": next_department.id,
        "to_department": next_department.name,
        "owner_id": process.owner_id,
        "actor_id": actor_ref.id,
    }

    async def _notify(session: AsyncSession) -> None:
        await notification_service.notify_process_moved(session, **fields)

    effects = PostCommitEffects()
    effects.add("notify", _notify, warning=NOTIFY_WARNING)
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=actor_ref.id,
            action=audit_service.ACTION_ADVANCE,
            entity="PROCESS",
            entity_id=process.id,
            entity_name=process.company_name,
            field="current_department_id",
            old_value=source_id,
            new_value=next_department.id,
            process_id=process.id,
            company_id=process.company_id,
            department_id=next_department.id,
        ),
        warning=AUDIT_WARNING,
    )
    effects.add("metrics", _count("advance"))
    return process, effects


# ── Finalize ────────────────────────────────────────────────────────


async def finalize_process(db: AsyncSession, process_id: int, actor) -> tuple[Process, PostCommitEffects]:
    process = await load_process(db, process_id, for_update=True)
    actor_ref = actor_from_user(actor)

    if process.status == STATUS_FINALIZED:
        raise InvalidTransition(f"Process {process.id} is already finalized")
    flow = checked_flow(process)
    is_last = process.current_department_index == len(flow) - 1

    context = FinalizeContext(
        current_department=process.current_department_id, is_last_department=is_last
    )
    if not can_perform(actor_ref, Action.FINALIZE_PROCESS, context):
        raise Forbidden("You cannot finalize this process")
    if not is_last:
        raise InvalidTransition(f"Process {process.id} can only be finalized at its last department")

    now = utcnow()
    process.status = STATUS_FINALIZED
    process.finalized_at = now
    process.progress = 100
    process.updated_at = now
    await _close_open_steps(db, process.id, actor_ref.id, now)

    department_name = await _department_name(db, process.current_department_id)
    await history_service.record_event(
        db,
        process.id,
        history_service.EVENT_FINALIZE,
        f"Process finalized in {department_name}",
        user_id=actor_ref.id,
        department_id=process.current_department_id,
    )
    logger.info(
        "process %s finalized by user %s",
        process.id,
        actor_ref.id,
        extra={"process_id": process.id, "user_id": actor_ref.id},
    )

    effects = PostCommitEffects()
    if process.owner_id is not None and process.owner_id != actor_ref.id:
        owner_id, pid, name = process.owner_id, process.id, process.company_name

        async def _notify(session: AsyncSession) -> None:
            await notification_service.create_notification(
                session,
                user_id=owner_id,
                notif_type="process_finalized",
                title=f"Process #{pid} finalized",
                message=name,
                link=f"/processes/{pid}",
                process_id=pid,
                actor_id=actor_ref.id,
            )

        effects.add("notify", _notify, warning=NOTIFY_WARNING)
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=actor_ref.id,
            action=audit_service.ACTION_FINALIZE,
            entity="PROCESS",
            entity_id=process.id,
            entity_name=process.company_name,
            process_id=process.id,
            company_id=process.company_id,
            department_id=process.current_department_id,
        ),
        warning=AUDIT_WARNING,
    )
    effects.add("metrics", _count("finalize"))
    return process, effects


# ── Interlink ───────────────────────────────────────────────────────


async def interlink_process(
    db: AsyncSession, process_id: int, actor, data
) -> tuple[Process, PostCommitEffects]:
    """Spawn the successor of a finalized process and link the two."""
    source = await load_process(db, process_id, for_update=True)
    if source.status != STATUS_FINALIZED:
        raise InvalidTransition(f"Process {source.id} must be finalized before it can be interlinked")
    if source.interlinked_to_id is not None:
        raise InvalidTransition(f"Process {source.id} already has an interlinked successor")

    reuse = data.reuse_company_data
    draft = ProcessCreate(
        company_name=data.company_name or source.company_name,
        company_id=source.company_id if reuse else None,
        cnpj=source.cnpj if reuse else None,
        contact_name=source.contact_name if reuse else None,
        email=source.email if reuse else None,
        phone=source.phone if reuse else None,
        service=data.service or source.service,
        priority=data.priority,
        template_id=data.template_id,
        department_flow=data.department_flow,
        questionnaires=data.questionnaires,
        independent_departments=data.independent_departments,
    )
    successor, effects = await create_process(db, actor, draft, interlinked_from=source)
    source.interlinked_to_id = successor.id
    actor_id = actor.id

    await history_service.record_event(
        db,
        source.id,
        history_service.EVENT_INTERLINK,
        f"Interlinked to process #{successor.id}",
        user_id=actor_id,
        details={"successor_id": successor.id},
    )
    await history_service.record_event(
        db,
        successor.id,
        history_service.EVENT_INTERLINK,
        f"Interlinked from process #{source.id}",
        user_id=actor_id,
        details={"predecessor_id": source.id},
    )
    logger.info("process %s interlinked to %s by user %s", source.id, successor.id, actor_id)

    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=actor_id,
            action=audit_service.ACTION_INTERLINK,
            entity="PROCESS",
            entity_id=source.id,
            entity_name=source.company_name,
            new_value=successor.id,
            process_id=source.id,
            company_id=source.company_id,
        ),
        warning=AUDIT_WARNING,
    )
    effects.add("metrics", _count("interlink"))
    return successor, effects


# ── Edit / delete ───────────────────────────────────────────────────

EDITABLE_FIELDS = (
    "company_name",
    "cnpj",
    "contact_name",
    "email",
    "phone",
    "service",
    "description",
    "notes",
    "priority",
    "due_at",
)


async def update_process(db: AsyncSession, process_id: int, actor, data) -> tuple[Process, PostCommitEffects]:
    process = await load_process(db, process_id, for_update=True)
    actor_ref = actor_from_user(actor)
    context = DepartmentContext(current_department=process.current_department_id)
    if not can_perform(actor_ref, Action.EDIT_PROCESS, context):
        raise Forbidden("You cannot edit processes")

    changes = data.model_dump(exclude_unset=True)
    before = {k: getattr(process, k) for k in EDITABLE_FIELDS}
    for key, value in changes.items():
        if key in EDITABLE_FIELDS:
            setattr(process, key, value)
    after = {k: getattr(process, k) for k in changes if k in EDITABLE_FIELDS}
    diff = audit_service.detect_changes(before, after)
    await db.flush()

    effects = PostCommitEffects()
    if diff:
        effects.add(
            "audit",
            audit_service.audit_changes_effect(
                diff,
                user_id=actor_ref.id,
                action=audit_service.ACTION_UPDATE,
                entity="PROCESS",
                entity_id=process.id,
                entity_name=process.company_name,
                process_id=process.id,
                company_id=process.company_id,
            ),
            warning=AUDIT_WARNING,
        )
    return process, effects


async def process_snapshot(db: AsyncSession, process: Process) -> dict:
    """Process columns plus every row that cascades away with it.

    Documents keep their storage path and visibility so the blobs can be
    reattached on restore, or removed once the trash item is purged.
    """
    pid = process.id
    steps = await history_service.list_flow_steps(db, pid)

    async def rows(model, order):
        result = await db.execute(select(model).where(model.process_id == pid).order_by(order))
        return [serialize_entity(row) for row in result.scalars().all()]

    tag_ids = (
        await db.execute(select(process_tags.c.tag_id).where(process_tags.c.process_id == pid))
    ).scalars().all()
    return {
        "flow_steps": [serialize_entity(s) for s in steps],
        "questions": await rows(Question, Question.id),
        "answers": await rows(Answer, Answer.id),
        "documents": await rows(Document, Document.id),
        "comments": await rows(Comment, Comment.id),
        "history": await rows(HistoryEvent, HistoryEvent.id),
        "tag_ids": sorted(tag_ids),
    }


async def delete_process(db: AsyncSession, process_id: int, actor) -> tuple[str | None, PostCommitEffects]:
    """Archive a process (type PROCESS) and delete it with its dependent rows."""
    process = await load_process(db, process_id, for_update=True)
    actor_ref = actor_from_user(actor)
    context = DepartmentContext(current_department=process.current_department_id)
    if not can_perform(actor_ref, Action.DELETE_PROCESS, context):
        raise Forbidden("You cannot delete this process")

    archived = await trash_service.archive(
        db,
        "PROCESS",
        process,
        actor_ref.id,
        data=await process_snapshot(db, process),
        name=process.company_name,
        description=process.service,
        process_id=process.id,
        department_id=process.current_department_id,
        company_id=process.company_id,
    )
    pid, name, company_id = process.id, process.company_name, process.company_id
    await db.delete(process)
    await db.flush()
    logger.info("process %s deleted by user %s", pid, actor_ref.id, extra={"process_id": pid, "user_id": actor_ref.id})

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=actor_ref.id,
            action=audit_service.ACTION_DELETE,
            entity="PROCESS",
            entity_id=pid,
            entity_name=name,
            company_id=company_id,
        ),
        warning=AUDIT_WARNING,
    )
    return archived.warning, effects


async def list_processes(
    db: AsyncSession,
    status: str | None = None,
    department_id: int | None = None,
    company_id: int | None = None,
    tag_id: int | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Process]:
    query = select(Process)
    if status:
        query = query.where(Process.status == status)
    if department_id is not None:
        query = query.where(Process.current_department_id == department_id)
    if company_id is not None:
        query = query.where(Process.company_id == company_id)
    if tag_id is not None:
        query = query.join(process_tags, process_tags.c.process_id == Process.id).where(
            process_tags.c.tag_id == tag_id
        )
    if search:
        query = query.where(Process.company_name.ilike(f"%{search}%"))
    query = query.order_by(Process.created_at.desc(), Process.id.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())
