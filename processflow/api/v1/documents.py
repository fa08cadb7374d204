from __future__ import annotations

import mimetypes

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user, get_storage, split_form_list
from processflow.config import settings
from processflow.core.security import verify_signed_path
from processflow.database import get_db
from processflow.schemas.document import DocumentVisibilityUpdate
from processflow.services import document_service
from processflow.services.storage import StorageBackend
from processflow.services.user_cache import CurrentUser

router = APIRouter(tags=["documents"])


@router.get("/processes/{process_id}/documents")
async def list_documents(
    process_id: int,
    department_id: int | None = None,
    question_id: int | None = None,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    docs = await document_service.list_documents(
        db, process_id, user, department_id=department_id, question_id=question_id
    )
    return [document_service.document_to_dict(d) for d in docs]


@router.post("/processes/{process_id}/documents", status_code=201)
async def upload_document(
    process_id: int,
    file: UploadFile = File(...),
    type: str | None = Form(None),
    department_id: int | None = Form(None),
    question_id: int | None = Form(None),
    visibility: str | None = Form(None),
    allowed_roles: str | None = Form(None),
    allowed_user_ids: str | None = Form(None),
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    storage: StorageBackend = Depends(get_storage),
):
    content = await file.read()
    doc, reference, effects = await document_service.upload_document(
        db,
        storage,
        process_id,
        user,
        filename=file.filename or "file",
        content=content,
        content_type=file.content_type,
        doc_type=type,
        department_id=department_id,
        question_id=question_id,
        visibility=visibility,
        allowed_roles=split_form_list(allowed_roles),
        allowed_user_ids=split_form_list(allowed_user_ids),
    )
    await db.commit()
    data = document_service.document_to_dict(doc)
    data["signed_url"] = reference
    warnings = await effects.dispatch(db)
    return {"document": data, "warnings": warnings}


@router.get("/documents/{document_id}/url")
async def resolve_document(
    document_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return await document_service.resolve_document(db, document_id, user)


@router.patch("/documents/{document_id}/visibility")
async def update_document_visibility(
    document_id: int,
    body: DocumentVisibilityUpdate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    doc = await document_service.update_visibility(
        db, document_id, user, body.visibility, body.allowed_roles, body.allowed_user_ids
    )
    await db.commit()
    return document_service.document_to_dict(doc)


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: int,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    warning, effects = await document_service.delete_document(db, document_id, user)
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


@router.get("/files/{token}")
async def download_file(
    token: str,
    storage: StorageBackend = Depends(get_storage),
):
    """Serve a stored file to the holder of a valid signed reference."""
    path = verify_signed_path(token)
    if path is None:
        raise HTTPException(status_code=403, detail="Invalid or expired link")
    content = await storage.get(path)
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    filename = path.rsplit("/", 1)[-1].split("_", 1)[-1]
    return Response(
        content=content,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )
