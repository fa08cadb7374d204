"""Authenticated-user cache used by ``get_current_user``.

Entries are immutable ``CurrentUser`` snapshots, never ORM instances, so a
cached value is safe to hand to any request's session.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from processflow.core.permissions import Role, parse_role


@dataclass(frozen=True)
class CurrentUser:
    id: int
    name: str
    email: str
    role: str
    department_id: int | None
    is_active: bool = True

    @classmethod
    def from_model(cls, user) -> CurrentUser:
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            department_id=user.department_id,
            is_active=bool(user.is_active),
        )

    @property
    def is_admin(self) -> bool:
        return parse_role(self.role) is Role.ADMIN


class UserCache(Protocol):
    def get(self, user_id: int) -> CurrentUser | None: ...

    def put(self, user_id: int, user: CurrentUser, ttl: float | None = None) -> None: ...

    def invalidate(self, user_id: int) -> None: ...

    def clear(self) -> None: ...


class TTLUserCache:
    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # user_id -> (user, expires_at)
        self._entries: dict[int, tuple[CurrentUser, float]] = {}

    def get(self, user_id: int) -> CurrentUser | None:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        user, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(user_id, None)
            return None
        return user

    def put(self, user_id: int, user: CurrentUser, ttl: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl is None else ttl
        if ttl <= 0:
            return
        self._entries[user_id] = (user, self._clock() + ttl)

    def invalidate(self, user_id: int) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()


class NullUserCache:
    """Cache that never stores anything; every lookup goes to the database."""

    def get(self, user_id: int) -> CurrentUser | None:
        return None

    def put(self, user_id: int, user: CurrentUser, ttl: float | None = None) -> None:
        return None

    def invalidate(self, user_id: int) -> None:
        return None

    def clear(self) -> None:
        return None
