"""Permission evaluator: the single source of truth for who may do what.

The evaluator is a pure function over a declarative table
(role x action -> rule).  Rules that depend on the target process take an
explicit context object; a missing or malformed department on either side
always denies.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Union


class Role(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


# Role names used by older clients and imported data
ROLE_ALIASES: dict[str, Role] = {
    "admin": Role.ADMIN,
    "manager": Role.MANAGER,
    "gerente": Role.MANAGER,
    "user": Role.USER,
    "usuario": Role.USER,
}


def parse_role(value: Any) -> Role | None:
    """Map a stored role string (any case, any known alias) to a ``Role``."""
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    return ROLE_ALIASES.get(value.strip().lower())


class Action(str, enum.Enum):
    CREATE_PROCESS = "create_process"
    CREATE_CUSTOM_PROCESS = "create_custom_process"
    EDIT_PROCESS = "edit_process"
    DELETE_PROCESS = "delete_process"
    MOVE_PROCESS = "move_process"
    FINALIZE_PROCESS = "finalize_process"
    MANAGE_USERS = "manage_users"
    MANAGE_DEPARTMENTS = "manage_departments"
    CREATE_COMPANY = "create_company"
    EDIT_COMPANY = "edit_company"
    MANAGE_TAGS = "manage_tags"
    APPLY_TAGS = "apply_tags"
    COMMENT = "comment"
    FILL_QUESTIONNAIRE = "fill_questionnaire"
    VIEW_QUESTIONNAIRE = "view_questionnaire"
    UPLOAD_DOCUMENT = "upload_document"
    VIEW_ANALYTICS = "view_analytics"


ACTION_LABELS: dict[Action, str] = {
    Action.CREATE_PROCESS: "Create a process from a template",
    Action.CREATE_CUSTOM_PROCESS: "Create a process with a custom department flow",
    Action.EDIT_PROCESS: "Edit process data",
    Action.DELETE_PROCESS: "Delete a process (moves it to the trash)",
    Action.MOVE_PROCESS: "Advance a process to the next department",
    Action.FINALIZE_PROCESS: "Finalize a process at its last department",
    Action.MANAGE_USERS: "Create, edit and remove users",
    Action.MANAGE_DEPARTMENTS: "Create, edit and remove departments",
    Action.CREATE_COMPANY: "Register companies",
    Action.EDIT_COMPANY: "Edit company data",
    Action.MANAGE_TAGS: "Create and delete tags",
    Action.APPLY_TAGS: "Attach and detach tags on processes",
    Action.COMMENT: "Comment on processes",
    Action.FILL_QUESTIONNAIRE: "Answer the current department's questionnaire",
    Action.VIEW_QUESTIONNAIRE: "View questionnaires and answers",
    Action.UPLOAD_DOCUMENT: "Attach documents in the current department",
    Action.VIEW_ANALYTICS: "View analytics",
}


class Rule(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    # context.current_department must equal actor.department_id
    SAME_DEPARTMENT = "same_department"
    # SAME_DEPARTMENT, plus is_last_department must be True when supplied
    SAME_DEPARTMENT_AT_LAST = "same_department_at_last"


@dataclass(frozen=True)
class Actor:
    id: int
    role: Role
    department_id: int | None = None


@dataclass(frozen=True)
class DepartmentContext:
    """Context for actions scoped to the target process's current department."""

    current_department: Any


@dataclass(frozen=True)
class FinalizeContext:
    current_department: Any
    is_last_department: bool | None = None


Context = Union[DepartmentContext, FinalizeContext, None]

_A, _D = Rule.ALLOW, Rule.DENY
_SD, _SDL = Rule.SAME_DEPARTMENT, Rule.SAME_DEPARTMENT_AT_LAST

PERMISSION_TABLE: dict[Role, dict[Action, Rule]] = {
    Role.ADMIN: {action: _A for action in Action},
    Role.MANAGER: {
        Action.CREATE_PROCESS: _A,
        Action.CREATE_CUSTOM_PROCESS: _A,
        Action.EDIT_PROCESS: _D,
        Action.DELETE_PROCESS: _SD,
        Action.MOVE_PROCESS: _SD,
        Action.FINALIZE_PROCESS: _SDL,
        Action.MANAGE_USERS: _D,
        Action.MANAGE_DEPARTMENTS: _D,
        Action.CREATE_COMPANY: _D,
        Action.EDIT_COMPANY: _A,
        Action.MANAGE_TAGS: _A,
        Action.APPLY_TAGS: _A,
        Action.COMMENT: _A,
        Action.FILL_QUESTIONNAIRE: _SD,
        Action.VIEW_QUESTIONNAIRE: _A,
        Action.UPLOAD_DOCUMENT: _SD,
        Action.VIEW_ANALYTICS: _A,
    },
    Role.USER: {
        Action.CREATE_PROCESS: _A,
        Action.CREATE_CUSTOM_PROCESS: _D,
        Action.EDIT_PROCESS: _D,
        Action.DELETE_PROCESS: _D,
        Action.MOVE_PROCESS: _D,
        Action.FINALIZE_PROCESS: _D,
        Action.MANAGE_USERS: _D,
        Action.MANAGE_DEPARTMENTS: _D,
        Action.CREATE_COMPANY: _D,
        Action.EDIT_COMPANY: _D,
        Action.MANAGE_TAGS: _D,
        Action.APPLY_TAGS: _A,
        Action.COMMENT: _A,
        Action.FILL_QUESTIONNAIRE: _SD,
        Action.VIEW_QUESTIONNAIRE: _A,
        Action.UPLOAD_DOCUMENT: _D,
        Action.VIEW_ANALYTICS: _A,
    },
}

# Every role must rule on every action; a new Action without a row fails at import.
for _role in Role:
    _missing = set(Action) - set(PERMISSION_TABLE[_role])
    if _missing:
        raise RuntimeError(
            f"Permission table for {_role.value!r} is missing "
            f"{sorted(a.value for a in _missing)}"
        )


def is_department_id(value: Any) -> bool:
    """A well-formed department id is a positive int (bools excluded)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _same_department(actor: Actor, context: Context) -> bool:
    if context is None:
        return False
    current = context.current_department
    if not is_department_id(current) or not is_department_id(actor.department_id):
        return False
    return current == actor.department_id


def _apply(rule: Rule, actor: Actor, context: Context) -> bool:
    if rule is Rule.ALLOW:
        return True
    if rule is Rule.DENY:
        return False
    if rule is Rule.SAME_DEPARTMENT:
        return _same_department(actor, context)
    if rule is Rule.SAME_DEPARTMENT_AT_LAST:
        if not _same_department(actor, context):
            return False
        is_last = getattr(context, "is_last_department", None)
        return is_last is None or is_last is True
    return False


def can_perform(actor: Actor | None, action: Action | str, context: Context = None) -> bool:
    """Return True when ``actor`` may perform ``action`` against ``context``.

    Unauthenticated actors, unknown roles and unknown actions are denied.
    """
    if actor is None:
        return False
    role = parse_role(actor.role)
    if role is None:
        return False
    try:
        action = Action(action)
    except ValueError:
        return False
    return _apply(PERMISSION_TABLE[role][action], actor, context)


def actor_from_user(user: Any) -> Actor | None:
    """Build an ``Actor`` from a ``User`` row (or anything with the same attributes)."""
    if user is None:
        return None
    role = parse_role(getattr(user, "role", None))
    if role is None:
        return None
    return Actor(id=user.id, role=role, department_id=getattr(user, "department_id", None))


def effective_permissions(
    actor: Actor | None,
    current_department: Any = None,
    is_last_department: bool | None = None,
) -> dict[str, bool]:
    """Evaluate every action for ``actor`` against one process position."""
    dept_ctx = DepartmentContext(current_department=current_department)
    fin_ctx = FinalizeContext(
        current_department=current_department, is_last_department=is_last_department
    )
    out: dict[str, bool] = {}
    for action in Action:
        ctx: Context = fin_ctx if action is Action.FINALIZE_PROCESS else dept_ctx
        out[action.value] = can_perform(actor, action, ctx)
    return out
