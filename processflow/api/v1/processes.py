from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user
from processflow.config import settings
from processflow.core.permissions import actor_from_user, effective_permissions
from processflow.database import get_db
from processflow.models.process import STATUS_FINALIZED, FlowStep, Process
from processflow.models.tag import Tag, process_tags
from processflow.schemas.process import (
    InterlinkRequest,
    ProcessCreate,
    ProcessUpdate,
    SaveAnswersRequest,
)
from processflow.services import flow_service, history_service, questionnaire_service
from processflow.services.user_cache import CurrentUser

router = APIRouter()


def _iso(value):
    return value.isoformat() if value else None


def _process_to_dict(p: Process) -> dict:
    return {
        "id": p.id,
        "company_name": p.company_name,
        "company_id": p.company_id,
        "cnpj": p.cnpj,
        "contact_name": p.contact_name,
        "email": p.email,
        "phone": p.phone,
        "service": p.service,
        "description": p.description,
        "notes": p.notes,
        "status": p.status,
        "priority": p.priority,
        "current_department_id": p.current_department_id,
        "current_department_index": p.current_department_index,
        "department_flow": list(p.department_flow or []),
        "progress": p.progress,
        "independent_departments": p.independent_departments,
        "owner_id": p.owner_id,
        "template_id": p.template_id,
        "interlinked_from_id": p.interlinked_from_id,
        "interlinked_to_id": p.interlinked_to_id,
        "started_at": _iso(p.started_at),
        "due_at": _iso(p.due_at),
        "finalized_at": _iso(p.finalized_at),
        "created_at": _iso(p.created_at),
        "updated_at": _iso(p.updated_at),
    }


def _step_to_dict(s: FlowStep) -> dict:
    return {
        "id": s.id,
        "department_id": s.department_id,
        "order": s.order,
        "status": s.status,
        "entered_at": _iso(s.entered_at),
        "exited_at": _iso(s.exited_at),
        "completed_by_id": s.completed_by_id,
    }


@router.get("")
async def list_processes(
    status: str | None = Query(None),
    department_id: int | None = Query(None),
    company_id: int | None = Query(None),
    tag_id: int | None = Query(None),
    search: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    processes = await flow_service.list_processes(
        db,
        status=status,
        department_id=department_id,
        company_id=company_id,
        tag_id=tag_id,
        search=search,
        limit=limit,
        offset=offset,
    )
    return [_process_to_dict(p) for p in processes]


@router.post("", status_code=201)
async def create_process(
    body: ProcessCreate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    process, effects = await flow_service.create_process(db, user, body)
    await db.commit()
    data = _process_to_dict(process)
    warnings = await effects.dispatch(db)
    return {"process": data, "warnings": warnings}


@router.get("/{process_id}")
async def get_process(
    process_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    process = await flow_service.load_process(db, process_id)
    steps = await history_service.list_flow_steps(db, process_id)
    tags = await db.execute(
        select(Tag)
        .join(process_tags, process_tags.c.tag_id == Tag.id)
        .where(process_tags.c.process_id == process_id)
        .order_by(Tag.name)
    )
    data = _process_to_dict(process)
    data["flow_steps"] = [_step_to_dict(s) for s in steps]
    data["tags"] = [{"id": t.id, "name": t.name, "color": t.color} for t in tags.scalars().all()]
    return data


@router.patch("/{process_id}")
async def update_process(
    process_id: int,
    body: ProcessUpdate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    process, effects = await flow_service.update_process(db, process_id, user, body)
    await db.commit()
    data = _process_to_dict(process)
    warnings = await effects.dispatch(db)
    return {"process": data, "warnings": warnings}


@router.delete("/{process_id}")
async def delete_process(
    process_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    warning, effects = await flow_service.delete_process(db, process_id, user)
    await db.commit()
    warnings = await effects.dispatch(db)
    if warning:
        warnings.insert(0, warning)
    return {
        "message": "Process moved to the trash",
        "days_until_expiry": settings.TRASH_RETENTION_DAYS,
        "warning": warning,
        "warnings": warnings,
    }


@router.post("/{process_id}/advance")
async def advance_process(
    process_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    process, effects = await flow_service.advance_process(db, process_id, user)
    await db.commit()
    data = _process_to_dict(process)
    warnings = await effects.dispatch(db)
    return {"process": data, "warnings": warnings}


@router.post("/{process_id}/finalize")
async def finalize_process(
    process_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    process, effects = await flow_service.finalize_process(db, process_id, user)
    await db.commit()
    data = _process_to_dict(process)
    warnings = await effects.dispatch(db)
    return {
        "process": data,
        "interlink_available": data["interlinked_to_id"] is None,
        "warnings": warnings,
    }


@router.post("/{process_id}/interlink", status_code=201)
async def interlink_process(
    process_id: int,
    body: InterlinkRequest,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    successor, effects = await flow_service.interlink_process(db, process_id, user, body)
    await db.commit()
    data = _process_to_dict(successor)
    warnings = await effects.dispatch(db)
    return {"source_id": process_id, "process": data, "warnings": warnings}


@router.get("/{process_id}/history")
async def process_history(
    process_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    await flow_service.load_process(db, process_id)
    events = await history_service.list_events(db, process_id)
    return [history_service.event_to_dict(e) for e in events]


@router.get("/{process_id}/flow-steps")
async def process_flow_steps(
    process_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    await flow_service.load_process(db, process_id)
    return [_step_to_dict(s) for s in await history_service.list_flow_steps(db, process_id)]


@router.get("/{process_id}/permissions")
async def process_permissions(
    process_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """What the current user may do with this process right now."""
    process = await flow_service.load_process(db, process_id)
    flow = process.department_flow or []
    is_last = bool(flow) and process.current_department_index == len(flow) - 1
    perms = effective_permissions(
        actor_from_user(user),
        current_department=process.current_department_id,
        is_last_department=is_last,
    )
    if process.status == STATUS_FINALIZED:
        perms["move_process"] = False
        perms["finalize_process"] = False
    return {"process_id": process_id, "permissions": perms}


@router.get("/{process_id}/questionnaires/{department_id}")
async def get_questionnaire(
    process_id: int,
    department_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return await questionnaire_service.get_questionnaire(db, process_id, department_id, user)


@router.post("/{process_id}/answers")
async def save_answers(
    process_id: int,
    body: SaveAnswersRequest,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    answers, effects = await questionnaire_service.save_answers(
        db, process_id, user, body.answers, department_id=body.department_id
    )
    await db.commit()
    data = [
        {"id": a.id, "question_id": a.question_id, "value": a.value, "answered_by_id": a.answered_by_id}
        for a in answers
    ]
    warnings = await effects.dispatch(db)
    return {"saved": len(data), "answers": data, "warnings": warnings}
