from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.api.deps import get_current_user
from processflow.core.exceptions import Forbidden
from processflow.database import get_db
from processflow.services import audit_service
from processflow.services.user_cache import CurrentUser

router = APIRouter()


@router.get("")
async def list_audit_logs(
    entity: str | None = Query(None),
    entity_id: int | None = Query(None),
    process_id: int | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    if not user.is_admin:
        raise Forbidden("Only administrators can read the audit log")
    logs = await audit_service.list_audit_logs(
        db, entity=entity.upper() if entity else None, entity_id=entity_id, process_id=process_id,
        limit=limit, offset=offset,
    )
    return [
        {
            "id": log.id,
            "user_id": log.user_id,
            "action": log.action,
            "entity": log.entity,
            "entity_id": log.entity_id,
            "entity_name": log.entity_name,
            "field": log.field,
            "old_value": log.old_value,
            "new_value": log.new_value,
            "details": log.details,
            "process_id": log.process_id,
            "ip": log.ip,
            "created_at": log.created_at.isoformat() if log.created_at else None,
        }
        for log in logs
    ]
