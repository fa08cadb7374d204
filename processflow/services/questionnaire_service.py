"""Questionnaire binder.

Materializes the per-department question sets of a process, evaluates
conditional visibility, and stores answers keyed by (process, question).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.core.exceptions import Forbidden, NotFound, ValidationError
from processflow.core.permissions import Action, DepartmentContext, actor_from_user, can_perform
from processflow.models.department import Department
from processflow.models.document import Document
from processflow.models.process import Process
from processflow.models.questionnaire import QUESTION_TYPES, Answer, Question
from processflow.services.audit_service import ACTION_FILL, audit_effect
from processflow.services.effects import PostCommitEffects

logger = logging.getLogger(__name__)

OPERATORS = ("equals", "not_equals", "contains")

# Labels older clients send for question types
_TYPE_ALIASES = {
    "texto": "text",
    "textarea": "textarea",
    "numero": "number",
    "data": "date",
    "booleano": "boolean",
    "selecao": "select",
    "arquivo": "file",
    "telefone": "phone",
}


def to_question_type(raw: Any) -> str:
    """Normalize a question type; anything unknown becomes ``text``."""
    if not isinstance(raw, str):
        return "text"
    key = raw.strip().lower()
    if key in QUESTION_TYPES:
        return key
    return _TYPE_ALIASES.get(key, "text")


def _as_dict(draft: Any) -> dict:
    if hasattr(draft, "model_dump"):
        return draft.model_dump()
    return dict(draft or {})


def resolve_condition(raw: Any, id_map: Mapping[str, int]) -> dict | None:
    """Rewrite a condition's source from a temporary id to a persistent one.

    Returns None when there is no condition or its source cannot be resolved.
    """
    if not raw:
        return None
    raw = _as_dict(raw)
    source = raw.get("question_id")
    if source is None:
        return None
    persistent = id_map.get(str(source))
    if persistent is None:
        return None
    operator = raw.get("operator") or "equals"
    if operator not in OPERATORS:
        operator = "equals"
    return {"question_id": persistent, "operator": operator, "value": raw.get("value")}


def _order(value: Any, default: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return default


async def create_question_set(
    db: AsyncSession,
    department_id: int,
    drafts: Iterable[Any],
    process_id: int | None = None,
) -> list[Question]:
    """Persist one department's questions in two passes.

    Pass one inserts every question and records ``temporary id -> new id``;
    pass two rewrites conditions through that map.  Drafts with an empty
    label are skipped.
    """
    created: list[tuple[Question, dict]] = []
    for index, draft in enumerate(drafts):
        data = _as_dict(draft)
        label = (data.get("label") or "").strip()
        if not label:
            continue
        question = Question(
            department_id=department_id,
            process_id=process_id,
            label=label,
            type=to_question_type(data.get("type")),
            required=bool(data.get("required")),
            order=_order(data.get("order"), index),
            options=[str(o) for o in data.get("options") or []],
            condition=None,
        )
        db.add(question)
        created.append((question, data))
    await db.flush()

    id_map: dict[str, int] = {}
    for question, data in created:
        if data.get("id") is not None:
            id_map[str(data["id"])] = question.id

    for question, data in created:
        condition = resolve_condition(data.get("condition"), id_map)
        if data.get("condition") and condition is None:
            logger.info(
                "Dropping unresolved condition on question %s (source %r)",
                question.id,
                _as_dict(data["condition"]).get("question_id"),
            )
        question.condition = condition
    await db.flush()
    return [q for q, _ in created]


async def materialize_questions(
    db: AsyncSession,
    process_id: int,
    questionnaires: Mapping[Any, Iterable[Any]] | None,
    flow: Iterable[int],
) -> dict[int, list[Question]]:
    """Create process-specific questions for the departments of ``flow``."""
    in_flow = set(flow)
    out: dict[int, list[Question]] = {}
    for key, drafts in (questionnaires or {}).items():
        try:
            department_id = int(key)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid department id in questionnaire map: {key!r}") from None
        if department_id not in in_flow:
            logger.debug("Ignoring questionnaire for department %s outside the flow", department_id)
            continue
        out[department_id] = await create_question_set(db, department_id, drafts, process_id)
    return out


async def effective_questions(db: AsyncSession, process_id: int, department_id: int) -> list[Question]:
    """Process-specific questions for the department, else its global ones."""
    order = (Question.order, Question.id)
    result = await db.execute(
        select(Question)
        .where(Question.process_id == process_id, Question.department_id == department_id)
        .order_by(*order)
    )
    questions = list(result.scalars().all())
    if questions:
        return questions
    result = await db.execute(
        select(Question)
        .where(Question.process_id.is_(None), Question.department_id == department_id)
        .order_by(*order)
    )
    return list(result.scalars().all())


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return json.dumps(value, ensure_ascii=False)


def is_condition_met(
    condition: Mapping[str, Any] | None,
    answers: Mapping[int, str],
    known_question_ids: Iterable[int],
) -> bool:
    """Conditions whose source question is not in the set are always met."""
    if not condition:
        return True
    source = condition.get("question_id")
    if source not in set(known_question_ids):
        return True
    answer = _text(answers.get(source))
    expected = _text(condition.get("value"))
    operator = condition.get("operator") or "equals"
    if operator == "not_equals":
        return answer != expected
    if operator == "contains":
        return expected in answer
    return answer == expected


def is_answered(question: Question, value: str | None, documents: Iterable[Document]) -> bool:
    if question.type == "file":
        return any(
            doc.question_id == question.id
            and (doc.department_id is None or doc.department_id == question.department_id)
            for doc in documents
        )
    return bool((value or "").strip())


def serialize_answer_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


async def _load_process(db: AsyncSession, process_id: int, for_update: bool = False) -> Process:
    query = select(Process).where(Process.id == process_id)
    if for_update:
        query = query.with_for_update()
    process = (await db.execute(query)).scalar_one_or_none()
    if process is None:
        raise NotFound("Process", process_id)
    return process


async def get_questionnaire(db: AsyncSession, process_id: int, department_id: int, actor) -> dict:
    """The department's effective questions with answers, visibility and status."""
    if not can_perform(actor_from_user(actor), Action.VIEW_QUESTIONNAIRE):
        raise Forbidden("You cannot view questionnaires")
    await _load_process(db, process_id)
    if await db.get(Department, department_id) is None:
        raise NotFound("Department", department_id)

    questions = await effective_questions(db, process_id, department_id)
    ids = [q.id for q in questions]
    answers: dict[int, Answer] = {}
    if ids:
        result = await db.execute(
            select(Answer).where(Answer.process_id == process_id, Answer.question_id.in_(ids))
        )
        answers = {a.question_id: a for a in result.scalars().all()}
    documents = list(
        (
            await db.execute(
                select(Document).where(
                    Document.process_id == process_id,
                    Document.question_id.is_not(None),
                    or_(Document.department_id.is_(None), Document.department_id == department_id),
                )
            )
        )
        .scalars()
        .all()
    )

    values = {qid: a.value for qid, a in answers.items()}
    items = []
    missing_required = 0
    for q in questions:
        visible = is_condition_met(q.condition, values, ids)
        answered = is_answered(q, values.get(q.id), documents)
        if visible and q.required and not answered:
            missing_required += 1
        items.append(
            {
                "id": q.id,
                "label": q.label,
                "type": q.type,
                "required": q.required,
                "order": q.order,
                "options": q.options or [],
                "condition": q.condition,
                "process_specific": q.process_id is not None,
                "visible": visible,
                "answered": answered,
                "answer": values.get(q.id),
                "document_ids": [d.id for d in documents if d.question_id == q.id],
            }
        )
    return {
        "process_id": process_id,
        "department_id": department_id,
        "questions": items,
        "missing_required": missing_required,
    }


def _question_id(key: Any) -> int:
    try:
        qid = int(key)
    except (TypeError, ValueError):
        raise ValidationError(f"Question id must be numeric, got {key!r}") from None
    if qid <= 0:
        raise ValidationError(f"Question id must be positive, got {key!r}")
    return qid


async def save_answers(
    db: AsyncSession,
    process_id: int,
    actor,
    answers: Mapping[Any, Any],
    department_id: int | None = None,
) -> tuple[list[Answer], PostCommitEffects]:
    """Upsert answers; gated on the process's current department."""
    parsed = {_question_id(k): serialize_answer_value(v) for k, v in answers.items()}

    process = await _load_process(db, process_id, for_update=True)
    context = DepartmentContext(current_department=process.current_department_id)
    if not can_perform(actor_from_user(actor), Action.FILL_QUESTIONNAIRE, context):
        raise Forbidden("Only the process's current department can fill its questionnaire")
    current = process.current_department_id
    if department_id is not None and department_id != current:
        raise ValidationError(f"Answers can only be filed for the current department ({current})")

    if parsed:
        result = await db.execute(select(Question).where(Question.id.in_(list(parsed))))
        questions = {q.id: q for q in result.scalars().all()}
        for qid in parsed:
            q = questions.get(qid)
            if q is None or (q.process_id is not None and q.process_id != process_id):
                raise NotFound("Question", qid)
            if q.department_id != current:
                raise ValidationError(
                    f"Question {qid} belongs to department {q.department_id}, "
                    f"not the current department ({current})"
                )

    existing: dict[int, Answer] = {}
    if parsed:
        result = await db.execute(
            select(Answer).where(Answer.process_id == process_id, Answer.question_id.in_(list(parsed)))
        )
        existing = {a.question_id: a for a in result.scalars().all()}

    saved: list[Answer] = []
    for qid, value in parsed.items():
        answer = existing.get(qid)
        if answer is None:
            answer = Answer(process_id=process_id, question_id=qid, value=value, answered_by_id=actor.id)
            db.add(answer)
        else:
            answer.value = value
            answer.answered_by_id = actor.id
        saved.append(answer)
    await db.flush()

    dept = department_id or process.current_department_id
    effects = PostCommitEffects()
    effects.add(
        "audit",
        audit_effect(
            user_id=actor.id,
            action=ACTION_FILL,
            entity="QUESTIONNAIRE",
            entity_id=process_id,
            entity_name=process.company_name,
            details=f"Saved {len(saved)} answer(s) for department {dept}",
            process_id=process_id,
            company_id=process.company_id,
            department_id=dept,
        ),
        warning="Audit entry could not be recorded",
    )
    return saved, effects


def _existing_id(raw: Any) -> int | None:
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    return None


async def replace_global_questions(db: AsyncSession, department_id: int, drafts: Iterable[Any]) -> list[Question]:
    """Sync a department's global question set with ``drafts``.

    Drafts whose ``id`` names an existing global question update it in
    place (keeping its answers); other drafts are created; existing
    questions left out are deleted.
    """
    result = await db.execute(
        select(Question).where(Question.department_id == department_id, Question.process_id.is_(None))
    )
    existing = {q.id: q for q in result.scalars().all()}

    pairs: list[tuple[Question, dict]] = []
    for index, draft in enumerate(drafts):
        data = _as_dict(draft)
        label = (data.get("label") or "").strip()
        if not label:
            continue
        known = _existing_id(data.get("id"))
        question = existing.pop(known, None) if known is not None else None
        if question is None:
            question = Question(department_id=department_id, process_id=None)
            db.add(question)
        question.label = label
        question.type = to_question_type(data.get("type"))
        question.required = bool(data.get("required"))
        question.order = _order(data.get("order"), index)
        question.options = [str(o) for o in data.get("options") or []]
        pairs.append((question, data))

    for stale in existing.values():
        await db.delete(stale)
    await db.flush()

    id_map = {str(data["id"]): q.id for q, data in pairs if data.get("id") is not None}
    for question, data in pairs:
        question.condition = resolve_condition(data.get("condition"), id_map)
    await db.flush()
    return [q for q, _ in pairs]
