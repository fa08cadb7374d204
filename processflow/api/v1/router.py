from __future__ import annotations

from fastapi import APIRouter

from processflow.api.v1 import (
    audit,
    auth,
    comments,
    companies,
    departments,
    documents,
    notifications,
    processes,
    tags,
    templates,
    trash,
    users,
)

api_router = APIRouter()

api_router.include_router(auth.router)
api_router.include_router(processes.router, prefix="/processes", tags=["processes"])
api_router.include_router(documents.router)
api_router.include_router(comments.router)
api_router.include_router(tags.router)
api_router.include_router(departments.router, prefix="/departments", tags=["departments"])
api_router.include_router(companies.router, prefix="/companies", tags=["companies"])
api_router.include_router(users.router, prefix="/users", tags=["users"])
api_router.include_router(templates.router, prefix="/templates", tags=["templates"])
api_router.include_router(trash.router, prefix="/trash", tags=["trash"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_router.include_router(audit.router, prefix="/audit-logs", tags=["audit"])
