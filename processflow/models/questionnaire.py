from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from processflow.core.clock import utcnow
from processflow.models.base import Base, IntPKMixin, JSONType

QUESTION_TYPES = (
    "text",
    "textarea",
    "number",
    "date",
    "boolean",
    "select",
    "file",
    "phone",
    "email",
)


class Question(Base, IntPKMixin):
    """A questionnaire field.

    ``process_id`` is null for a department's global questions and set for
    questions customized for a single process.  ``condition`` is
    ``{"question_id", "operator", "value"}`` or null.
    """

    __tablename__ = "questions"

    department_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("departments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    process_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("processes.id", ondelete="CASCADE"), nullable=True, index=True
    )
    label: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="text")
    required: Mapped[bool] = mapped_column(Boolean, default=False)
    order: Mapped[int] = mapped_column(Integer, default=0)
    options: Mapped[list] = mapped_column(JSONType, default=list)
    condition: Mapped[dict | None] = mapped_column(JSONType, nullable=True)


class Answer(Base, IntPKMixin):
    __tablename__ = "answers"
    __table_args__ = (UniqueConstraint("process_id", "question_id", name="uq_answer_process_question"),)

    process_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("processes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False
    )
    value: Mapped[str] = mapped_column(Text, default="")
    answered_by_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    answered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
