"""Storage-neutral serialization for API payloads and trash snapshots."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import inspect as sa_inspect

MAX_SAFE_INTEGER = 2**53 - 1


def safe_int(value: int | None) -> int | str | None:
    """Return ``value`` unchanged when a JSON client can hold it exactly, else as a string."""
    if value is None:
        return None
    if -MAX_SAFE_INTEGER <= value <= MAX_SAFE_INTEGER:
        return value
    return str(value)


def to_jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, float, bool)):
        return value
    if isinstance(value, int):
        return safe_int(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, bytes):
        return None
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return str(value)


def serialize_entity(entity: Any, exclude: set[str] | frozenset[str] = frozenset()) -> dict[str, Any]:
    """Snapshot the column attributes of an ORM instance as plain JSON data.

    Relationships are not followed; callers add whatever related rows the
    snapshot needs explicitly.
    """
    mapper = sa_inspect(entity).mapper
    data: dict[str, Any] = {}
    for attr in mapper.column_attrs:
        if attr.key in exclude:
            continue
        data[attr.key] = to_jsonable(getattr(entity, attr.key))
    return data
