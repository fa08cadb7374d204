"""Tests for the HTTP instrumentation middleware and its fallback path labels.

Unmatched paths are labelled by collapsing ids and signed file tokens; the
middleware is driven through a bare Starlette app.
"""

from __future__ import annotations

import pytest
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from processflow.middleware.prometheus import PrometheusMiddleware, _normalise_path

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------


class TestNormalisePath:
    def test_numeric_id_collapsed(self):
        assert _normalise_path("/api/v1/processes/42") == "/api/v1/processes/{id}"

    def test_nested_ids(self):
        path = "/api/v1/processes/42/questionnaires/7"
        assert _normalise_path(path) == "/api/v1/processes/{id}/questionnaires/{id}"

    def test_signed_file_token_collapsed(self):
        path = "/api/v1/files/cHJvY2Vzc29z.1700000000.abc-_"
        assert _normalise_path(path) == "/api/v1/files/{token}"

    def test_no_id_unchanged(self):
        assert _normalise_path("/api/v1/departments") == "/api/v1/departments"

    def test_root_path(self):
        assert _normalise_path("/") == "/"

    def test_trailing_slash_stripped(self):
        assert _normalise_path("/api/v1/processes/") == "/api/v1/processes"

    def test_alphanumeric_segment_kept(self):
        assert _normalise_path("/api/v1/processes/abc123") == "/api/v1/processes/abc123"


# ---------------------------------------------------------------------------
# Middleware integration
# ---------------------------------------------------------------------------


def _homepage(request):
    return PlainTextResponse("ok")


def _erroring(request):
    raise ValueError("boom")


@pytest.fixture()
def metrics_app():
    application = Starlette(
        routes=[
            Route("/api/v1/processes", _homepage),
            Route("/api/health", _homepage),
            Route("/metrics", _homepage),
            Route("/api/v1/error", _erroring),
        ],
    )
    application.add_middleware(PrometheusMiddleware)
    return application


@pytest.fixture()
def metrics_client(metrics_app):
    return TestClient(metrics_app, raise_server_exceptions=False)


class TestPrometheusMiddleware:
    def test_normal_request_returns_200(self, metrics_client):
        assert metrics_client.get("/api/v1/processes").status_code == 200

    def test_health_skipped(self, metrics_client):
        """Health checks stay out of the request metrics."""
        assert metrics_client.get("/api/health").status_code == 200

    def test_metrics_skipped(self, metrics_client):
        assert metrics_client.get("/metrics").status_code == 200

    def test_error_request_records_500(self, metrics_client):
        """Even if the handler raises, metrics are still recorded."""
        assert metrics_client.get("/api/v1/error").status_code == 500
