from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from processflow.core.clock import utcnow
from processflow.models.base import Base, IntPKMixin, JSONType, TimestampMixin

STATUS_IN_PROGRESS = "in_progress"
STATUS_FINALIZED = "finalized"
PRIORITIES = ("low", "medium", "high")

STEP_IN_PROGRESS = "in_progress"
STEP_COMPLETED = "completed"


class Process(Base, IntPKMixin, TimestampMixin):
    __tablename__ = "processes"

    # Denormalized company / contact data; survives deletion of the company row
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    company_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True
    )
    cnpj: Mapped[str | None] = mapped_column(String(20), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    service: Mapped[str | None] = mapped_column(String(300), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=STATUS_IN_PROGRESS, index=True)
    priority: Mapped[str] = mapped_column(String(10), default="medium")

    current_department_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("departments.id"), nullable=True, index=True
    )
    current_department_index: Mapped[int] = mapped_column(Integer, default=0)
    department_flow: Mapped[list] = mapped_column(JSONType, default=list)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    # Stored as given; flows are always walked sequentially
    independent_departments: Mapped[bool] = mapped_column(Boolean, default=False)

    owner_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    template_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("templates.id", ondelete="SET NULL"), nullable=True
    )
    interlinked_from_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("processes.id", ondelete="SET NULL"), nullable=True
    )
    interlinked_to_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("processes.id", ondelete="SET NULL"), nullable=True
    )

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class FlowStep(Base, IntPKMixin):
    """One residency of a process in a department."""

    __tablename__ = "flow_steps"

    process_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("processes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    department_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("departments.id"), nullable=False
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=STEP_IN_PROGRESS)
    entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    exited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
