from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from processflow.core.clock import utcnow
from processflow.models.base import Base, IntPKMixin, JSONType
from processflow.models.document import VISIBILITY_PUBLIC

DEFAULT_ALERT_DAYS = 30


class CompanyDocument(Base, IntPKMixin):
    """A file kept on the company record (contracts, certificates, licences)."""

    __tablename__ = "company_documents"

    company_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    alert_days_before: Mapped[int] = mapped_column(Integer, default=DEFAULT_ALERT_DAYS)

    visibility: Mapped[str] = mapped_column(String(10), default=VISIBILITY_PUBLIC)
    allowed_roles: Mapped[list] = mapped_column(JSONType, default=list)
    allowed_user_ids: Mapped[list] = mapped_column(JSONType, default=list)

    uploaded_by_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
