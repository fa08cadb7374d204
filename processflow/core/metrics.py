"""Prometheus metrics, all exported under the ``processflow_`` prefix."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Info

NAMESPACE = "processflow"

# ── Application info ────────────────────────────────────────────────
# Exported as processflow_info{version=..., environment=...}
app_info = Info(NAMESPACE, "Build and runtime metadata")

# ── HTTP ────────────────────────────────────────────────────────────
http_requests_total = Counter(
    "http_requests_total",
    "Completed HTTP requests by route template and status code",
    ["method", "endpoint", "status"],
    namespace=NAMESPACE,
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "Wall time spent serving a request",
    ["method", "endpoint"],
    namespace=NAMESPACE,
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0),
)
http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "Requests currently being served",
    ["method"],
    namespace=NAMESPACE,
)

# ── Workflow ────────────────────────────────────────────────────────
workflow_transitions_total = Counter(
    "workflow_transitions_total",
    "Committed process transitions",
    ["kind"],  # create / advance / finalize / interlink
    namespace=NAMESPACE,
)
side_effect_failures_total = Counter(
    "side_effect_failures_total",
    "Post-commit effects (notifications, audit rows) that failed",
    ["effect"],
    namespace=NAMESPACE,
)
trash_archive_failures_total = Counter(
    "trash_archive_failures_total",
    "Deletions that went ahead without a trash snapshot",
    ["entity_type"],
    namespace=NAMESPACE,
)

# ── Database pool (PostgreSQL only) ─────────────────────────────────
db_pool_size = Gauge("db_pool_size", "Configured pool size", namespace=NAMESPACE)
db_pool_checked_in = Gauge("db_pool_checked_in", "Idle pooled connections", namespace=NAMESPACE)
db_pool_checked_out = Gauge("db_pool_checked_out", "Pooled connections in use", namespace=NAMESPACE)
db_pool_overflow = Gauge("db_pool_overflow", "Connections opened beyond pool_size", namespace=NAMESPACE)

# ── Background tasks ────────────────────────────────────────────────
bg_task_runs_total = Counter(
    "bg_task_runs_total",
    "Background task runs by outcome",
    ["task_name", "status"],
    namespace=NAMESPACE,
)
bg_task_last_success = Gauge(
    "bg_task_last_success_timestamp",
    "Unix time of the last successful run",
    ["task_name"],
    namespace=NAMESPACE,
)
