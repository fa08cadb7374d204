from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

Priority = Literal["low", "medium", "high"]


class ConditionIn(BaseModel):
    # May be a temporary id assigned by the client in the same request
    question_id: int | str
    operator: str = "equals"  # equals / not_equals / contains
    value: Any = None


class QuestionIn(BaseModel):
    id: int | str | None = None  # client-side temporary id
    label: str = ""
    type: str = "text"
    required: bool = False
    order: int | None = None
    options: list[str] = []
    condition: ConditionIn | None = None


class ProcessCreate(BaseModel):
    company_name: str | None = Field(None, max_length=300)
    company_id: int | None = None
    cnpj: str | None = None
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    service: str | None = None
    description: str | None = None
    notes: str | None = None
    priority: Priority = "medium"
    due_at: datetime | None = None

    # Either a template or an explicit (custom) department flow
    template_id: int | None = None
    department_flow: list[Any] = []
    questionnaires: dict[str, list[QuestionIn]] = {}
    independent_departments: bool = False
    tag_ids: list[int] = []


class ProcessUpdate(BaseModel):
    company_name: str | None = Field(None, min_length=1, max_length=300)
    cnpj: str | None = None
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    service: str | None = None
    description: str | None = None
    notes: str | None = None
    priority: Priority | None = None
    due_at: datetime | None = None


class InterlinkRequest(BaseModel):
    template_id: int | None = None
    department_flow: list[Any] = []
    questionnaires: dict[str, list[QuestionIn]] = {}
    reuse_company_data: bool = True
    independent_departments: bool = False
    company_name: str | None = None
    service: str | None = None
    priority: Priority = "medium"


class SaveAnswersRequest(BaseModel):
    department_id: int | None = None
    answers: dict[str, Any]
