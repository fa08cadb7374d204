from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import client_ip, get_current_user, get_storage, require_permission, split_form_list
from processflow.config import settings
from processflow.core.exceptions import ConflictError, Forbidden, NotFound, ValidationError
from processflow.core.permissions import Action
from processflow.core.serialization import serialize_entity
from processflow.database import get_db
from processflow.models.company import Company
from processflow.models.company_document import CompanyDocument
from processflow.schemas.admin import CompanyCreate, CompanyUpdate
from processflow.services import audit_service, company_document_service, trash_service
from processflow.services.effects import PostCommitEffects
from processflow.services.storage import StorageBackend
from processflow.services.user_cache import CurrentUser

router = APIRouter()

_FIELDS = ("name", "cnpj", "code", "email", "phone", "address")


def _company_to_dict(c: Company) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "cnpj": c.cnpj,
        "code": c.code,
        "email": c.email,
        "phone": c.phone,
        "address": c.address,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }


async def _get_company(db: AsyncSession, company_id: int) -> Company:
    company = await db.get(Company, company_id)
    if company is None:
        raise NotFound("Company", company_id)
    return company


async def _check_unique(db: AsyncSession, cnpj: str | None, code: str | None, exclude_id: int | None = None):
    for field, value in (("cnpj", cnpj), ("code", code)):
        if not value:
            continue
        query = select(Company.id).where(getattr(Company, field) == value)
        if exclude_id is not None:
            query = query.where(Company.id != exclude_id)
        if (await db.execute(query)).first() is not None:
            raise ConflictError("Company", field, value)


@router.get("")
async def list_companies(
    search: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    query = select(Company)
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(Company.name.ilike(pattern), Company.cnpj.ilike(pattern), Company.code.ilike(pattern)))
    result = await db.execute(query.order_by(Company.name))
    return [_company_to_dict(c) for c in result.scalars().all()]


@router.get("/{company_id}")
async def get_company(
    company_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return _company_to_dict(await _get_company(db, company_id))


@router.post("", status_code=201)
async def create_company(
    body: CompanyCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.CREATE_COMPANY)),
):
    await _check_unique(db, body.cnpj, body.code)
    company = Company(**body.model_dump())
    db.add(company)
    await db.commit()
    data = _company_to_dict(company)

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=user.id,
            action=audit_service.ACTION_CREATE,
            entity="COMPANY",
            entity_id=company.id,
            entity_name=company.name,
            company_id=company.id,
            ip=client_ip(request),
        ),
    )
    data["warnings"] = await effects.dispatch(db)
    return data


@router.patch("/{company_id}")
async def update_company(
    company_id: int,
    body: CompanyUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_permission(Action.EDIT_COMPANY)),
):
    company = await _get_company(db, company_id)
    changes = body.model_dump(exclude_unset=True)
    await _check_unique(db, changes.get("cnpj"), changes.get("code"), exclude_id=company.id)

    before = {k: getattr(company, k) for k in _FIELDS}
    for key, value in changes.items():
        setattr(company, key, value)
    diff = audit_service.detect_changes(before, {k: getattr(company, k) for k in changes})
    await db.commit()
    data = _company_to_dict(company)

    effects = PostCommitEffects()
    if diff:
        effects.add(
            "audit",
            audit_service.audit_changes_effect(
                diff,
                user_id=user.id,
                action=audit_service.ACTION_UPDATE,
                entity="COMPANY",
                entity_id=company.id,
                entity_name=company.name,
                company_id=company.id,
                ip=client_ip(request),
            ),
        )
    data["warnings"] = await effects.dispatch(db)
    return data


@router.delete("/{company_id}")
async def delete_company(
    company_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    if not user.is_admin:
        raise Forbidden("Only administrators can delete companies")
    company = await _get_company(db, company_id)
    name = company.name
    docs = await db.execute(select(CompanyDocument).where(CompanyDocument.company_id == company.id))
    archived = await trash_service.archive(
        db,
        "COMPANY",
        company,
        user.id,
        data={"documents": [serialize_entity(d) for d in docs.scalars().all()]},
        name=name,
        description=company.cnpj,
        company_id=company.id,
    )
    await db.delete(company)
    await db.commit()

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=user.id,
            action=audit_service.ACTION_DELETE,
            entity="COMPANY",
            entity_id=company_id,
            entity_name=name,
            ip=client_ip(request),
        ),
    )
    warnings = await effects.dispatch(db)
    return {
        "message": "Company moved to the trash",
        "warning": archived.warning,
        "warnings": ([archived.warning] if archived.warning else []) + warnings,
    }


# ── Company documents ───────────────────────────────────────────────


def _parse_valid_until(raw: str | None) -> datetime | None:
    if not raw or not raw.strip():
        return None
    try:
        return datetime.fromisoformat(raw.strip())
    except ValueError:
        raise ValidationError(f"valid_until must be an ISO date, got {raw!r}") from None


@router.get("/{company_id}/documents")
async def list_company_documents(
    company_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    docs = await company_document_service.list_company_documents(db, company_id, user)
    return [company_document_service.company_document_to_dict(d) for d in docs]


@router.post("/{company_id}/documents", status_code=201)
async def upload_company_document(
    company_id: int,
    file: UploadFile = File(...),
    type: str = Form(""),
    description: str | None = Form(None),
    valid_until: str | None = Form(None),
    alert_days_before: int | None = Form(None),
    visibility: str | None = Form(None),
    allowed_roles: str | None = Form(None),
    allowed_user_ids: str | None = Form(None),
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    storage: StorageBackend = Depends(get_storage),
):
    content = await file.read()
    doc, reference, effects = await company_document_service.upload_company_document(
        db,
        storage,
        company_id,
        user,
        filename=file.filename or "file",
        content=content,
        doc_type=type,
        content_type=file.content_type,
        description=description,
        valid_until=_parse_valid_until(valid_until),
        alert_days_before=alert_days_before,
        visibility=visibility,
        allowed_roles=split_form_list(allowed_roles),
        allowed_user_ids=split_form_list(allowed_user_ids),
    )
    await db.commit()
    data = company_document_service.company_document_to_dict(doc)
    data["signed_url"] = reference
    warnings = await effects.dispatch(db)
    return {"document": data, "warnings": warnings}


@router.get("/{company_id}/documents/{document_id}/url")
async def resolve_company_document(
    company_id: int,
    document_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return await company_document_service.resolve_company_document(db, company_id, document_id, user)


@router.delete("/{company_id}/documents/{document_id}")
async def delete_company_document(
    company_id: int,
    document_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    warning, effects = await company_document_service.delete_company_document(db, company_id, document_id, user)
    await db.commit()
    warnings = await effects.dispatch(db)
    if warning:
        warnings.insert(0, warning)
    return {
        "message": "Document moved to the trash",
        "days_until_expiry": settings.TRASH_RETENTION_DAYS,
        "warning": warning,
        "warnings": warnings,
    }
