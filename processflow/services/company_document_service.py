"""Documents kept on a company record.

Same storage and visibility rules as process documents, plus an optional
expiry date: listings report whether each file is still valid, about to
expire within its alert window, or already expired.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.config import settings
from processflow.core.clock import ensure_utc, utcnow
from processflow.core.exceptions import Forbidden, NotFound, ValidationError
from processflow.core.serialization import safe_int
from processflow.core.visibility import can_access
from processflow.models.company import Company
from processflow.models.company_document import DEFAULT_ALERT_DAYS, CompanyDocument
from processflow.models.document import VISIBILITY_USERS
from processflow.services import audit_service, trash_service
from processflow.services.document_service import normalize_visibility, signed_reference
from processflow.services.effects import PostCommitEffects
from processflow.services.storage import StorageBackend, build_company_document_path

logger = logging.getLogger(__name__)

STATUS_NO_EXPIRY = "no_expiry"
STATUS_EXPIRED = "expired"
STATUS_EXPIRING_SOON = "expiring_soon"
STATUS_OK = "ok"


def validity_status(doc: CompanyDocument, now: datetime | None = None) -> tuple[str, int | None]:
    """Status and whole calendar days left until ``valid_until``."""
    if doc.valid_until is None:
        return STATUS_NO_EXPIRY, None
    days = (ensure_utc(doc.valid_until).date() - (now or utcnow()).date()).days
    if days < 0:
        return STATUS_EXPIRED, days
    window = DEFAULT_ALERT_DAYS if doc.alert_days_before is None else doc.alert_days_before
    if days <= window:
        return STATUS_EXPIRING_SOON, days
    return STATUS_OK, days


def can_access_company_document(actor, doc: CompanyDocument) -> bool:
    return can_access(
        actor,
        owner_id=doc.uploaded_by_id,
        visibility=doc.visibility,
        allowed_roles=doc.allowed_roles,
        allowed_user_ids=doc.allowed_user_ids,
    )


def company_document_to_dict(doc: CompanyDocument, now: datetime | None = None) -> dict:
    status, days = validity_status(doc, now)
    return {
        "id": doc.id,
        "company_id": doc.company_id,
        "name": doc.name,
        "type": doc.doc_type,
        "description": doc.description,
        "mime_type": doc.mime_type,
        "size": safe_int(doc.size),
        "valid_until": doc.valid_until.isoformat() if doc.valid_until else None,
        "alert_days_before": doc.alert_days_before,
        "validity_status": status,
        "validity_days": days,
        "visibility": doc.visibility,
        "allowed_roles": doc.allowed_roles or [],
        "allowed_user_ids": doc.allowed_user_ids or [],
        "uploaded_by_id": doc.uploaded_by_id,
        "uploaded_at": doc.uploaded_at.isoformat() if doc.uploaded_at else None,
    }


async def _get_company(db: AsyncSession, company_id: int) -> Company:
    company = await db.get(Company, company_id)
    if company is None:
        raise NotFound("Company", company_id)
    return company


async def _get_document(db: AsyncSession, company_id: int, document_id: int) -> CompanyDocument:
    doc = await db.get(CompanyDocument, document_id)
    if doc is None or doc.company_id != company_id:
        raise NotFound("Company document", document_id)
    return doc


async def upload_company_document(
    db: AsyncSession,
    storage: StorageBackend,
    company_id: int,
    actor,
    *,
    filename: str,
    content: bytes,
    doc_type: str | None,
    content_type: str | None = None,
    description: str | None = None,
    valid_until: datetime | None = None,
    alert_days_before: int | None = None,
    visibility: str | None = None,
    allowed_roles: list | None = None,
    allowed_user_ids: list | None = None,
) -> tuple[CompanyDocument, dict, PostCommitEffects]:
    company = await _get_company(db, company_id)
    doc_type = (doc_type or "").strip()
    if not doc_type:
        raise ValidationError("Document type is required")
    if not content:
        raise ValidationError("Uploaded file is empty")
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError(f"File exceeds the {settings.MAX_UPLOAD_BYTES} byte upload limit")
    if alert_days_before is not None and alert_days_before < 0:
        raise ValidationError("alert_days_before cannot be negative")
    mode, roles, user_ids = normalize_visibility(visibility, allowed_roles, allowed_user_ids)
    if mode == VISIBILITY_USERS and actor.id not in user_ids:
        user_ids = sorted({*user_ids, actor.id})

    path = await storage.put(build_company_document_path(company_id, filename), content, content_type)
    try:
        doc = CompanyDocument(
            company_id=company_id,
            name=filename or "file",
            doc_type=doc_type,
            description=description or None,
            mime_type=content_type,
            size=len(content),
            path=path,
            valid_until=ensure_utc(valid_until),
            alert_days_before=DEFAULT_ALERT_DAYS if alert_days_before is None else alert_days_before,
            visibility=mode,
            allowed_roles=roles,
            allowed_user_ids=user_ids,
            uploaded_by_id=actor.id,
        )
        db.add(doc)
        await db.flush()
    except Exception:
        try:
            await storage.delete(path)
        except Exception:
            logger.exception("Failed to remove orphaned upload %s", path)
        raise

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=actor.id,
            action=audit_service.ACTION_ATTACH,
            entity="COMPANY_DOCUMENT",
            entity_id=doc.id,
            entity_name=doc.name,
            company_id=company.id,
            details=f"Type: {doc_type}",
        ),
        warning="Audit entry could not be recorded",
    )
    return doc, signed_reference(doc), effects


async def list_company_documents(db: AsyncSession, company_id: int, actor) -> list[CompanyDocument]:
    await _get_company(db, company_id)
    result = await db.execute(
        select(CompanyDocument)
        .where(CompanyDocument.company_id == company_id)
        .order_by(CompanyDocument.uploaded_at.desc(), CompanyDocument.id.desc())
    )
    return [d for d in result.scalars().all() if can_access_company_document(actor, d)]


async def resolve_company_document(db: AsyncSession, company_id: int, document_id: int, actor) -> dict:
    doc = await _get_document(db, company_id, document_id)
    if not can_access_company_document(actor, doc):
        raise Forbidden("You do not have access to this document")
    return signed_reference(doc)


async def delete_company_document(
    db: AsyncSession, company_id: int, document_id: int, actor
) -> tuple[str | None, PostCommitEffects]:
    """Archive the document as COMPANY_DOCUMENT; the stored object stays until purge."""
    doc = await _get_document(db, company_id, document_id)
    if not can_access_company_document(actor, doc):
        raise Forbidden("You do not have access to this document")

    archived = await trash_service.archive(
        db,
        "COMPANY_DOCUMENT",
        doc,
        actor.id,
        name=doc.name,
        description=doc.doc_type,
        company_id=company_id,
        visibility=doc.visibility,
        allowed_roles=doc.allowed_roles,
        allowed_user_ids=doc.allowed_user_ids,
    )
    name = doc.name
    await db.delete(doc)
    await db.flush()
    logger.info("company document %s of company %s deleted by user %s", document_id, company_id, actor.id)

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=actor.id,
            action=audit_service.ACTION_DELETE,
            entity="COMPANY_DOCUMENT",
            entity_id=document_id,
            entity_name=name,
            company_id=company_id,
        ),
        warning="Audit entry could not be recorded",
    )
    return archived.warning, effects
