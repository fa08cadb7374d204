"""Request bodies for departments, companies, users and templates."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator

from processflow.schemas.process import QuestionIn

RoleName = Literal["admin", "manager", "user"]


class RequiredDocumentIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    description: str | None = None
    file_type: str | None = None
    required: bool = True


class DepartmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    responsible: str | None = None
    color: str | None = None
    icon: str | None = None
    display_order: int = 0
    questions: list[QuestionIn] = []
    required_documents: list[RequiredDocumentIn] = []


class DepartmentUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    responsible: str | None = None
    color: str | None = None
    icon: str | None = None
    display_order: int | None = None
    active: bool | None = None
    # When given, replaces the department's global questions / required documents
    questions: list[QuestionIn] | None = None
    required_documents: list[RequiredDocumentIn] | None = None


class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    cnpj: str | None = None
    code: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None

    @field_validator("cnpj")
    @classmethod
    def digits_only(cls, v: str | None) -> str | None:
        if v is None:
            return v
        digits = "".join(c for c in v if c.isdigit())
        return digits or None


class CompanyUpdate(CompanyCreate):
    name: str | None = Field(None, min_length=1, max_length=300)


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: RoleName = "user"
    department_id: int | None = None


class UserUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    email: EmailStr | None = None
    password: str | None = Field(None, min_length=6)
    role: RoleName | None = None
    department_id: int | None = None
    is_active: bool | None = None


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    description: str | None = None
    department_flow: list[int]
    questionnaires_by_department: dict[str, list[QuestionIn]] = {}
