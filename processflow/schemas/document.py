from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

Visibility = Literal["PUBLIC", "ROLES", "USERS"]


class DocumentVisibilityUpdate(BaseModel):
    visibility: Visibility
    allowed_roles: list[str] = []
    allowed_user_ids: list[int] = []
