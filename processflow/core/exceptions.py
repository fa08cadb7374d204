"""Workflow exception hierarchy.

Services raise these types only; the API layer registers a single handler
that renders any ``WorkflowError`` as ``{"error": kind, "detail": message}``.

Usage:
    from processflow.core.exceptions import NotFound, InvalidTransition

    raise NotFound("Process", 42)
    raise InvalidTransition("Process is already at the last department")
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class. ``kind`` is the stable error identifier exposed to clients."""

    kind = "workflow_error"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class Forbidden(WorkflowError):
    """The permission evaluator (or a document visibility rule) denied the action."""

    kind = "forbidden"
    status_code = 403


class NotFound(WorkflowError):
    """A referenced process, department, document, question, ... does not exist."""

    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = resource
        if resource_id is not None:
            msg += f" {resource_id}"
        super().__init__(f"{msg} not found")


class InvalidTransition(WorkflowError):
    """A flow-machine precondition was violated."""

    kind = "invalid_transition"
    status_code = 409


class ValidationError(WorkflowError):
    """Malformed input: missing required fields, non-numeric ids, bad enums."""

    kind = "validation_error"
    status_code = 400


class ConflictError(WorkflowError):
    """A unique constraint would be violated (duplicate e-mail, CNPJ, tag name)."""

    kind = "conflict"
    status_code = 409

    def __init__(self, resource: str, field: str, value: object = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with this {field} already exists"
        super().__init__(msg, details={"field": field})


class StorageFailure(WorkflowError):
    """The persistence layer or the blob store failed."""

    kind = "storage_failure"
    status_code = 500
