from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from processflow.core.clock import utcnow
from processflow.models.base import Base, IntPKMixin, JSONType

VISIBILITY_PUBLIC = "PUBLIC"
VISIBILITY_ROLES = "ROLES"
VISIBILITY_USERS = "USERS"
VISIBILITY_MODES = (VISIBILITY_PUBLIC, VISIBILITY_ROLES, VISIBILITY_USERS)


class Document(Base, IntPKMixin):
    __tablename__ = "documents"

    process_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("processes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    department_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    question_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("questions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(100), default="other")
    mime_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    # Internal storage path; public URLs are never stored
    path: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    visibility: Mapped[str] = mapped_column(String(10), default=VISIBILITY_PUBLIC)
    allowed_roles: Mapped[list] = mapped_column(JSONType, default=list)
    allowed_user_ids: Mapped[list] = mapped_column(JSONType, default=list)

    uploaded_by_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
