"""Per-item visibility rule shared by documents and their trash snapshots."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from processflow.core.permissions import Role, parse_role

PUBLIC = "PUBLIC"
ROLES = "ROLES"
USERS = "USERS"


def _normalized_roles(roles: Iterable[Any] | None) -> set[str]:
    return {str(r).strip().upper() for r in roles or () if r is not None}


def _normalized_ids(ids: Iterable[Any] | None) -> set[int]:
    out: set[int] = set()
    for value in ids or ():
        try:
            out.add(int(value))
        except (TypeError, ValueError):
            continue
    return out


def can_access(
    actor: Any,
    *,
    owner_id: int | None,
    visibility: str | None,
    allowed_roles: Iterable[Any] | None = None,
    allowed_user_ids: Iterable[Any] | None = None,
) -> bool:
    """Uploader and admins always pass; otherwise the visibility mode decides.

    Unknown modes deny.
    """
    if actor is None:
        return False
    if owner_id is not None and actor.id == owner_id:
        return True
    role = parse_role(actor.role)
    if role is Role.ADMIN:
        return True

    mode = (visibility or "").upper()
    if mode == PUBLIC:
        return True
    if mode == ROLES:
        allowed = _normalized_roles(allowed_roles)
        return str(actor.role).upper() in allowed or (role is not None and role.value.upper() in allowed)
    if mode == USERS:
        return actor.id in _normalized_ids(allowed_user_ids)
    return False
