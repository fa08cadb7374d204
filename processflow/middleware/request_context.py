"""Request correlation id for logs and responses."""

from __future__ import annotations

import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from processflow.core.logging_config import request_id_var

REQUEST_ID_HEADER = "X-Request-ID"

_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def pick_request_id(incoming: str | None) -> str:
    """Reuse a well-formed caller-supplied id, otherwise mint one."""
    if incoming and _VALID_ID.match(incoming):
        return incoming
    return uuid.uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = pick_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
