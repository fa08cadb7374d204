from processflow.models.audit_log import AuditLog
from processflow.models.base import Base
from processflow.models.comment import Comment
from processflow.models.company import Company
from processflow.models.company_document import CompanyDocument
from processflow.models.department import Department, RequiredDocument
from processflow.models.document import Document
from processflow.models.history import HistoryEvent
from processflow.models.notification import Notification
from processflow.models.process import FlowStep, Process
from processflow.models.questionnaire import Answer, Question
from processflow.models.tag import Tag, process_tags
from processflow.models.template import Template
from processflow.models.trash import TrashItem
from processflow.models.user import User

__all__ = [
    "AuditLog",
    "Answer",
    "Base",
    "Comment",
    "Company",
    "CompanyDocument",
    "Department",
    "Document",
    "FlowStep",
    "HistoryEvent",
    "Notification",
    "Process",
    "Question",
    "RequiredDocument",
    "Tag",
    "Template",
    "TrashItem",
    "User",
    "process_tags",
]
