"""Logging setup.

Development gets one readable line per record; every other environment gets
one JSON object per line.  Records carry the current request id (set by
``RequestContextMiddleware``) plus whatever workflow identifiers the caller
passed through ``extra=``.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Keys copied from ``extra=`` into JSON output when present.
CONTEXT_FIELDS = ("request_id", "user_id", "process_id", "department_id")

_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "alembic": logging.INFO,
}


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s [%(rid)s] %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        record.rid = rid[:8] if rid else "-"
        return super().format(record)


def configure_logging(environment: str = "development", level: str = "INFO") -> None:
    """Replace the root handlers with a single stdout handler.

    Called once from the application lifespan; uvicorn may already have
    attached handlers, which are dropped.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(DevFormatter() if environment == "development" else JSONFormatter())
    root.addHandler(handler)

    for name, lib_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(lib_level)
