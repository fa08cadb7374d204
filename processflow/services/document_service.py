"""Document attachment ledger.

Documents are stored through a ``StorageBackend`` and referenced by their
internal path only.  Access goes through ``resolve_document``, which checks
the document's own visibility rule and mints a fresh signed reference on
every call.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.config import settings
from processflow.core.exceptions import Forbidden, NotFound, ValidationError
from processflow.core.permissions import Role, parse_role
from processflow.core.security import sign_storage_path
from processflow.core.serialization import safe_int
from processflow.core.visibility import can_access
from processflow.models.department import Department
from processflow.models.document import VISIBILITY_MODES, VISIBILITY_PUBLIC, Document
from processflow.models.process import Process
from processflow.models.questionnaire import Question
from processflow.services import audit_service, history_service, trash_service
from processflow.services.effects import PostCommitEffects
from processflow.services.storage import StorageBackend, build_document_path

logger = logging.getLogger(__name__)


def can_access_document(actor, document: Document) -> bool:
    return can_access(
        actor,
        owner_id=document.uploaded_by_id,
        visibility=document.visibility,
        allowed_roles=document.allowed_roles,
        allowed_user_ids=document.allowed_user_ids,
    )


def document_to_dict(doc: Document) -> dict:
    return {
        "id": doc.id,
        "process_id": doc.process_id,
        "department_id": doc.department_id,
        "question_id": doc.question_id,
        "name": doc.name,
        "type": doc.doc_type,
        "mime_type": doc.mime_type,
        "size": safe_int(doc.size),
        "visibility": doc.visibility,
        "allowed_roles": doc.allowed_roles or [],
        "allowed_user_ids": doc.allowed_user_ids or [],
        "uploaded_by_id": doc.uploaded_by_id,
        "uploaded_at": doc.uploaded_at.isoformat() if doc.uploaded_at else None,
    }


def normalize_visibility(
    visibility: str | None, allowed_roles: list | None, allowed_user_ids: list | None
) -> tuple[str, list[str], list[int]]:
    mode = (visibility or VISIBILITY_PUBLIC).upper()
    if mode not in VISIBILITY_MODES:
        raise ValidationError(f"Unknown visibility {visibility!r}")
    roles = sorted({str(r).strip().upper() for r in allowed_roles or [] if str(r).strip()})
    user_ids: list[int] = []
    for value in allowed_user_ids or []:
        try:
            user_ids.append(int(value))
        except (TypeError, ValueError):
            raise ValidationError(f"User id must be numeric, got {value!r}") from None
    return mode, roles, sorted(set(user_ids))


def signed_reference(doc: Document) -> dict:
    if not doc.path:
        raise ValidationError(f"Document {doc.id} has no stored file")
    token, expires = sign_storage_path(doc.path)
    return {
        "document_id": doc.id,
        "url": f"{settings.API_V1_PREFIX}/files/{token}",
        "expires_at": datetime.fromtimestamp(expires, tz=timezone.utc).isoformat(),
        "expires_in": settings.SIGNED_URL_TTL_SECONDS,
    }


async def _get_document(db: AsyncSession, document_id: int) -> Document:
    doc = await db.get(Document, document_id)
    if doc is None:
        raise NotFound("Document", document_id)
    return doc


async def upload_document(
    db: AsyncSession,
    storage: StorageBackend,
    process_id: int,
    actor,
    *,
    filename: str,
    content: bytes,
    content_type: str | None = None,
    doc_type: str | None = None,
    department_id: int | None = None,
    question_id: int | None = None,
    visibility: str | None = None,
    allowed_roles: list | None = None,
    allowed_user_ids: list | None = None,
) -> tuple[Document, dict, PostCommitEffects]:
    process = await db.get(Process, process_id)
    if process is None:
        raise NotFound("Process", process_id)
    if department_id is not None and await db.get(Department, department_id) is None:
        raise NotFound("Department", department_id)
    if question_id is not None:
        question = await db.get(Question, question_id)
        if question is None or (question.process_id is not None and question.process_id != process_id):
            raise NotFound("Question", question_id)
    if not content:
        raise ValidationError("Uploaded file is empty")
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError(f"File exceeds the {settings.MAX_UPLOAD_BYTES} byte upload limit")
    mode, roles, user_ids = normalize_visibility(visibility, allowed_roles, allowed_user_ids)

    path = await storage.put(build_document_path(process_id, filename), content, content_type)
    try:
        doc = Document(
            process_id=process_id,
            department_id=department_id,
            question_id=question_id,
            name=filename or "file",
            doc_type=doc_type or "other",
            mime_type=content_type,
            size=len(content),
            path=path,
            visibility=mode,
            allowed_roles=roles,
            allowed_user_ids=user_ids,
            uploaded_by_id=actor.id,
        )
        db.add(doc)
        await db.flush()
        await history_service.record_event(
            db,
            process_id,
            history_service.EVENT_DOCUMENT,
            f"Document {doc.name} added",
            user_id=actor.id,
            department_id=department_id,
            details={"document_id": doc.id, "question_id": question_id},
        )
    except Exception:
        # The row never made it; do not leave an orphaned blob behind
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
            entity="DOCUMENT",
            entity_id=doc.id,
            entity_name=doc.name,
            process_id=process_id,
            company_id=process.company_id,
            department_id=department_id,
        ),
        warning="Audit entry could not be recorded",
    )
    return doc, signed_reference(doc), effects


async def list_documents(
    db: AsyncSession,
    process_id: int,
    actor,
    department_id: int | None = None,
    question_id: int | None = None,
) -> list[Document]:
    if await db.get(Process, process_id) is None:
        raise NotFound("Process", process_id)
    query = select(Document).where(Document.process_id == process_id)
    if department_id is not None:
        query = query.where(Document.department_id == department_id)
    if question_id is not None:
        query = query.where(Document.question_id == question_id)
    result = await db.execute(query.order_by(Document.uploaded_at, Document.id))
    return [d for d in result.scalars().all() if can_access_document(actor, d)]


async def resolve_document(db: AsyncSession, document_id: int, actor) -> dict:
    doc = await _get_document(db, document_id)
    if not can_access_document(actor, doc):
        raise Forbidden("You do not have access to this document")
    return signed_reference(doc)


async def update_visibility(
    db: AsyncSession,
    document_id: int,
    actor,
    visibility: str,
    allowed_roles: list | None = None,
    allowed_user_ids: list | None = None,
) -> Document:
    doc = await _get_document(db, document_id)
    if doc.uploaded_by_id != actor.id and parse_role(actor.role) is not Role.ADMIN:
        raise Forbidden("Only the uploader or an administrator can change document visibility")
    doc.visibility, doc.allowed_roles, doc.allowed_user_ids = normalize_visibility(
        visibility, allowed_roles, allowed_user_ids
    )
    await db.flush()
    return doc


async def delete_document(
    db: AsyncSession, document_id: int, actor
) -> tuple[str | None, PostCommitEffects]:
    """Archive the document, drop its row and keep the stored object."""
    doc = await _get_document(db, document_id)
    if not can_access_document(actor, doc):
        raise Forbidden("You do not have access to this document")

    archived = await trash_service.archive(
        db,
        "DOCUMENT",
        doc,
        actor.id,
        name=doc.name,
        description=doc.doc_type,
        process_id=doc.process_id,
        department_id=doc.department_id,
        visibility=doc.visibility,
        allowed_roles=doc.allowed_roles,
        allowed_user_ids=doc.allowed_user_ids,
    )
    process_id, name, department_id = doc.process_id, doc.name, doc.department_id
    await history_service.record_event(
        db,
        process_id,
        history_service.EVENT_DOCUMENT,
        f"Document {name} removed",
        user_id=actor.id,
        department_id=department_id,
        details={"document_id": document_id, "removed": True},
    )
    await db.delete(doc)
    await db.flush()
    logger.info("document %s of process %s deleted by user %s", document_id, process_id, actor.id)

    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_service.audit_effect(
            user_id=actor.id,
            action=audit_service.ACTION_DELETE,
            entity="DOCUMENT",
            entity_id=document_id,
            entity_name=name,
            process_id=process_id,
            department_id=department_id,
        ),
        warning="Audit entry could not be recorded",
    )
    return archived.warning, effects
