from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from processflow.core.clock import utcnow
from processflow.models.base import Base, IntPKMixin, JSONType

# Entity types that can be archived
TRASH_ENTITY_TYPES = (
    "USER",
    "DEPARTMENT",
    "COMPANY",
    "TEMPLATE",
    "COMMENT",
    "DOCUMENT",
    "PROCESS",
)


class TrashItem(Base, IntPKMixin):
    """Snapshot of a deleted entity, recoverable until ``expires_at``.

    Scope ids are plain integers: the snapshot outlives the rows it mentions.
    """

    __tablename__ = "trash_items"

    entity_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False)

    name: Mapped[str] = mapped_column(String(500), default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    process_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    department_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    visibility: Mapped[str] = mapped_column(String(10), default="PUBLIC")
    allowed_roles: Mapped[list] = mapped_column(JSONType, default=list)
    allowed_user_ids: Mapped[list] = mapped_column(JSONType, default=list)

    deleted_by_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    deleted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
