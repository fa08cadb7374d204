"""HTTP instrumentation: request count, latency and in-flight gauge per endpoint."""

from __future__ import annotations

import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from processflow.core.metrics import (
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)

_UNINSTRUMENTED = frozenset({"/api/health", "/metrics"})


def _normalise_path(path: str) -> str:
    """Fallback label for requests that matched no route.

    Numeric segments become ``{id}`` and the segment after ``files`` (a signed
    document reference) becomes ``{token}``.
    """
    segments = path.rstrip("/").split("/")
    labelled = [
        "{id}" if seg.isdigit() else "{token}" if seg and prev == "files" else seg
        for prev, seg in zip([""] + segments, segments)
    ]
    return "/".join(labelled) or "/"


def _endpoint_label(request: Request) -> str:
    # FastAPI stores the matched APIRoute in the scope; its path is the template.
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if template:
        return template.rstrip("/") or "/"
    return _normalise_path(request.url.path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _UNINSTRUMENTED:
            return await call_next(request)

        method = request.method
        in_flight = http_requests_in_progress.labels(method=method)
        in_flight.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = _endpoint_label(request)
            http_requests_total.labels(method=method, endpoint=endpoint, status=str(status_code)).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            in_flight.dec()
