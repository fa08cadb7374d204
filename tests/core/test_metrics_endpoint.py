"""Integration test for the /metrics endpoint on the FastAPI app.

Uses a lightweight TestClient against the real app; the lifespan is not
entered, so no database is touched.
"""

from __future__ import annotations

import pytest
from starlette.testclient import TestClient

from processflow.main import app


@pytest.fixture()
def main_client():
    return TestClient(app, raise_server_exceptions=False)


class TestMetricsEndpoint:
    def test_returns_200(self, main_client):
        assert main_client.get("/metrics").status_code == 200

    def test_content_type(self, main_client):
        resp = main_client.get("/metrics")
        assert "text/plain" in resp.headers["content-type"]

    def test_contains_app_info(self, main_client):
        assert "processflow_info" in main_client.get("/metrics").text

    def test_contains_http_metrics(self, main_client):
        main_client.get("/api/v1/does-not-exist")
        body = main_client.get("/metrics").text
        assert "processflow_http_requests_total" in body
        assert "processflow_http_request_duration_seconds" in body

    def test_health(self, main_client):
        resp = main_client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
