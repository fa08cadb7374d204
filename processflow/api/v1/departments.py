from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import client_ip, get_current_user, require_permission
from processflow.core.exceptions import NotFound
from processflow.core.permissions import Action
from processflow.database import get_db
from processflow.models.department import Department, RequiredDocument
from processflow.models.questionnaire import Question
from processflow.schemas.admin import DepartmentCreate, DepartmentUpdate
from processflow.services import audit_service, questionnaire_service, trash_service
from processflow.services.effects import PostCommitEffects
from processflow.services.user_cache import CurrentUser

router = APIRouter()

_FIELDS = ("name", "description", "responsible", "color", "icon", "display_order", "active")


def _department_to_dict(d: Department) -> dict:
    return {
        "id": d.id,
        "name": d.name,
        "description": d.description,
        "responsible": d.responsible,
        "color": d.color,
        "icon": d.icon,
        "display_order": d.display_order,
        "active": d.active,
    }


def _question_to_dict(q: Question) -> dict:
    return {
        "id": q.id,
        "label": q.label,
        "type": q.type,
        "required": q.required,
        "order": q.order,
        "options": q.options or [],
        "condition": q.condition,
    }


def _required_doc_to_dict(r: RequiredDocument) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "file_type": r.file_type,
        "required": r.required,
    }


async def _get_department(db: AsyncSession, department_id: int) -> Department:
    dept = await db.get(Department, department_id)
    if dept is None:
        raise NotFound("Department", department_id)
    return dept


async def _details(db: AsyncSession, dept: Department) -> dict:
    questions = await db.execute(
        select(Question)
        .where(Question.department_id == dept.id, Question.process_id.is_(None))
        .order_by(Question.order, Question.id)
    )
    docs = await db.execute(
        select(RequiredDocument).where(RequiredDocument.department_id == dept.id).order_by(RequiredDocument.id)
    )
    data = _department_to_dict(dept)
    data["questions"] = [_question_to_dict(q) for q in questions.scalars().all()]
    data["required_documents"] = [_required_doc_to_dict(r) for r in docs.scalars().all()]
    return data


async def _replace_required_documents(db: AsyncSession, department_id: int, docs) -> None:
    await db.execute(delete(RequiredDocument).where(RequiredDocument.department_id == department_id))
    for doc in docs:
        db.add(RequiredDocument(department_id=department_id, **doc.model_dump()))
    await db.flush()


@router.get("")
async def list_departments(
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    query = select(Department)
    if not include_inactive:
        query = query.where(Department.active.is_(True))
    result = await db.execute(query.order_by(Department.display_order, Department.name))
    return [_department_to_dict(d) for d in result.scalars().all()]


@router.get("/{department_id}")
async def get_department(
    department_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return await _details(db, await _get_department(db, department_id))


@router.post("", status_code=201)
async def create_department(
    body: DepartmentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_DEPARTMENTS)),
):
    dept = Department(**body.model_dump(exclude={"questions", "required_documents"}))
    db.add(dept)
    await db.flush()
    await questionnaire_service.create_question_set(db, dept.id, body.questions)
    await _replace_required_documents(db, dept.id, body.required_documents)
    await db.commit()
    data = await _details(db, dept)

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=user.id,
            action=audit_service.ACTION_CREATE,
            entity="DEPARTMENT",
            entity_id=dept.id,
            entity_name=dept.name,
            department_id=dept.id,
            ip=client_ip(request),
        ),
    )
    data["warnings"] = await effects.dispatch(db)
    return data


@router.patch("/{department_id}")
async def update_department(
    department_id: int,
    body: DepartmentUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_DEPARTMENTS)),
):
    dept = await _get_department(db, department_id)
    changes = body.model_dump(exclude_unset=True, exclude={"questions", "required_documents"})
    before = {k: getattr(dept, k) for k in _FIELDS}
    for key, value in changes.items():
        setattr(dept, key, value)
    diff = audit_service.detect_changes(before, {k: getattr(dept, k) for k in changes})

    if body.questions is not None:
        await questionnaire_service.replace_global_questions(db, dept.id, body.questions)
    if body.required_documents is not None:
        await _replace_required_documents(db, dept.id, body.required_documents)
    await db.commit()
    data = await _details(db, dept)

    effects = PostCommitEffects()
    if diff:
        effects.add(
            "audit",
            audit_service.audit_changes_effect(
                diff,
                user_id=user.id,
                action=audit_service.ACTION_UPDATE,
                entity="DEPARTMENT",
                entity_id=dept.id,
                entity_name=dept.name,
                department_id=dept.id,
                ip=client_ip(request),
            ),
        )
    data["warnings"] = await effects.dispatch(db)
    return data


@router.delete("/{department_id}")
async def delete_department(
    department_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.MANAGE_DEPARTMENTS)),
):
    """Archive the department and deactivate it; processes keep referencing it."""
    dept = await _get_department(db, department_id)
    details = await _details(db, dept)
    archived = await trash_service.archive(
        db,
        "DEPARTMENT",
        dept,
        user.id,
        data={
            "questions": details["questions"],
            "required_documents": details["required_documents"],
        },
        name=dept.name,
        description=dept.description,
        department_id=dept.id,
    )
    dept.active = False
    await db.commit()
    name = dept.name

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=user.id,
            action=audit_service.ACTION_DELETE,
            entity="DEPARTMENT",
            entity_id=department_id,
            entity_name=name,
            department_id=department_id,
            ip=client_ip(request),
        ),
    )
    warnings = await effects.dispatch(db)
    return {
        "message": "Department deactivated and moved to the trash",
        "warning": archived.warning,
        "warnings": ([archived.warning] if archived.warning else []) + warnings,
    }
