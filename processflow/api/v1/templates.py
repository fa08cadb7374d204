from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user, require_permission
from processflow.core.exceptions import NotFound, ValidationError
from processflow.core.permissions import Action
from processflow.database import get_db
from processflow.models.department import Department
from processflow.models.template import Template
from processflow.schemas.admin import TemplateCreate
from processflow.services import trash_service
from processflow.services.user_cache import CurrentUser

router = APIRouter()


def _template_to_dict(t: Template) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "description": t.description,
        "department_flow": list(t.department_flow or []),
        "questionnaires_by_department": t.questionnaires_by_department or {},
        "created_by_id": t.created_by_id,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }


@router.get("")
async def list_templates(
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(select(Template).order_by(Template.name))
    return [_template_to_dict(t) for t in result.scalars().all()]


@router.get("/{template_id}")
async def get_template(
    template_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    template = await db.get(Template, template_id)
    if template is None:
        raise NotFound("Template", template_id)
    return _template_to_dict(template)


@router.post("", status_code=201)
async def create_template(
    body: TemplateCreate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.CREATE_CUSTOM_PROCESS)),
):
    if not body.department_flow:
        raise ValidationError("department_flow must list at least one department")
    found = set(
        (await db.execute(select(Department.id).where(Department.id.in_(body.department_flow)))).scalars().all()
    )
    for dept_id in body.department_flow:
        if dept_id not in found:
            raise NotFound("Department", dept_id)

    template = Template(
        name=body.name,
        description=body.description,
        department_flow=list(body.department_flow),
        questionnaires_by_department={
            key: [q.model_dump(mode="json") for q in questions]
            for key, questions in body.questionnaires_by_department.items()
        },
        created_by_id=user.id,
    )
    db.add(template)
    await db.commit()
    return _template_to_dict(template)


@router.delete("/{template_id}")
async def delete_template(
    template_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.CREATE_CUSTOM_PROCESS)),
):
    template = await db.get(Template, template_id)
    if template is None:
        raise NotFound("Template", template_id)
    archived = await trash_service.archive(
        db, "TEMPLATE", template, user.id, name=template.name, description=template.description
    )
    await db.delete(template)
    await db.commit()
    return {"message": "Template moved to the trash", "warning": archived.warning}
