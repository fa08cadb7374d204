from __future__ import annotations

from pydantic import BaseModel, Field


class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1)
    department_id: int | None = None


class CommentUpdate(BaseModel):
    text: str = Field(..., min_length=1)


class TagCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = "#6b7280"
