from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.core.clock import now_ms
from processflow.core.serialization import safe_int
from processflow.models.history import HistoryEvent
from processflow.models.process import FlowStep

EVENT_START = "START"
EVENT_MOVEMENT = "MOVEMENT"
EVENT_DOCUMENT = "DOCUMENT"
EVENT_FINALIZE = "FINALIZE"
EVENT_COMMENT = "COMMENT"
EVENT_TAG = "TAG"
EVENT_INTERLINK = "INTERLINK"


async def record_event(
    db: AsyncSession,
    process_id: int,
    event_type: str,
    action: str,
    user_id: int | None = None,
    department_id: int | None = None,
    details: dict | None = None,
) -> HistoryEvent:
    """Append a history event to the current transaction."""
    event = HistoryEvent(
        process_id=process_id,
        type=event_type,
        action=action,
        user_id=user_id,
        department_id=department_id,
        details=details,
        timestamp_ms=now_ms(),
    )
    db.add(event)
    await db.flush()
    return event


async def list_events(db: AsyncSession, process_id: int) -> list[HistoryEvent]:
    result = await db.execute(
        select(HistoryEvent)
        .where(HistoryEvent.process_id == process_id)
        .order_by(HistoryEvent.timestamp_ms, HistoryEvent.id)
    )
    return list(result.scalars().all())


async def list_flow_steps(db: AsyncSession, process_id: int) -> list[FlowStep]:
    result = await db.execute(
        select(FlowStep).where(FlowStep.process_id == process_id).order_by(FlowStep.order, FlowStep.id)
    )
    return list(result.scalars().all())


def event_to_dict(event: HistoryEvent) -> dict:
    return {
        "id": event.id,
        "process_id": event.process_id,
        "type": event.type,
        "action": event.action,
        "user_id": event.user_id,
        "department_id": event.department_id,
        "details": event.details,
        "timestamp": safe_int(event.timestamp_ms),
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }
