"""Exception handlers shared by the application and the test app."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from processflow.core.exceptions import StorageFailure, WorkflowError

logger = logging.getLogger(__name__)

_GENERIC_STORAGE_MESSAGE = "The operation could not be completed. Please try again later."


def _is_admin(request: Request) -> bool:
    user = getattr(request.state, "current_user", None)
    return bool(user is not None and user.is_admin)


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    detail = exc.message
    if isinstance(exc, StorageFailure):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message, exc_info=exc)
        if not _is_admin(request):
            detail = _GENERIC_STORAGE_MESSAGE
    body = {"error": exc.kind, "detail": detail}
    if exc.details and not isinstance(exc, StorageFailure):
        body["details"] = jsonable_encoder(exc.details)
    return JSONResponse(status_code=exc.status_code, content=body)


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content={"error": "conflict", "detail": "A record with the same unique value already exists"},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "detail": f"{location}: {message}" if location else message,
            "errors": errors,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WorkflowError, workflow_error_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
