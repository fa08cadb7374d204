"""Service-level tests for the process flow state machine."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from processflow.core.exceptions import Forbidden, InvalidTransition, NotFound, ValidationError
from processflow.models.history import HistoryEvent
from processflow.models.notification import Notification
from processflow.models.process import FlowStep, Process
from processflow.models.questionnaire import Question
from processflow.models.trash import TrashItem
from processflow.schemas.process import InterlinkRequest, ProcessCreate
from processflow.services import flow_service
from processflow.services.user_cache import CurrentUser
from tests.conftest import (
    create_department,
    create_process,
    create_raw_process,
    create_template,
    create_user,
)


def _actor(user) -> CurrentUser:
    return CurrentUser.from_model(user)


async def _count(db, model, *where) -> int:
    result = await db.execute(select(func.count()).select_from(model).where(*where))
    return result.scalar_one()


@pytest.fixture
async def flow_env(db, departments, admin_user):
    comercial, fiscal, contabil = departments
    managers = [
        await create_user(db, role="manager", department_id=d.id, name=f"Gerente {d.name}")
        for d in departments
    ]
    regular = await create_user(db, role="user", department_id=comercial.id, name="Usuario Comercial")
    await db.commit()
    process = await create_process(
        db, actor=_actor(admin_user), flow=[d.id for d in departments]
    )
    return {
        "departments": departments,
        "managers": managers,
        "user": regular,
        "admin": admin_user,
        "process": process,
    }


# ---------------------------------------------------------------------------
# Progress arithmetic
# ---------------------------------------------------------------------------


class TestComputeProgress:
    @pytest.mark.parametrize(
        "index,length,expected",
        [(0, 3, 33), (1, 3, 67), (2, 3, 100), (0, 1, 100), (0, 8, 13), (3, 8, 50), (0, 0, 0)],
    )
    def test_rounding(self, index, length, expected):
        assert flow_service.compute_progress(index, length) == expected


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreateProcess:
    async def test_initial_state(self, db, flow_env):
        process = flow_env["process"]
        first = flow_env["departments"][0]
        assert process.status == "in_progress"
        assert process.current_department_index == 0
        assert process.current_department_id == first.id
        assert process.progress == 33

        steps = (await db.execute(select(FlowStep).where(FlowStep.process_id == process.id))).scalars().all()
        assert len(steps) == 1
        assert steps[0].department_id == first.id
        assert steps[0].status == "in_progress"
        assert await _count(db, HistoryEvent, HistoryEvent.process_id == process.id, HistoryEvent.type == "START") == 1

    async def test_manager_must_start_in_own_department(self, db, flow_env):
        manager = flow_env["managers"][1]
        flow = [d.id for d in flow_env["departments"]]
        with pytest.raises(Forbidden):
            await create_process(db, actor=_actor(manager), flow=flow)

    async def test_manager_custom_flow_from_own_department(self, db, flow_env):
        manager = flow_env["managers"][1]
        fiscal, contabil = flow_env["departments"][1:]
        process = await create_process(db, actor=_actor(manager), flow=[fiscal.id, contabil.id])
        assert process.owner_id == manager.id
        assert process.progress == 50

    async def test_regular_user_cannot_use_custom_flow(self, db, flow_env):
        comercial = flow_env["departments"][0]
        with pytest.raises(Forbidden):
            await create_process(db, actor=_actor(flow_env["user"]), flow=[comercial.id])

    async def test_regular_user_from_template(self, db, flow_env):
        comercial, fiscal, _ = flow_env["departments"]
        template = await create_template(db, department_flow=[comercial.id, fiscal.id])
        await db.commit()
        data = ProcessCreate(company_name="Oficina do Joao", template_id=template.id)
        process, _ = await flow_service.create_process(db, _actor(flow_env["user"]), data)
        assert process.department_flow == [comercial.id, fiscal.id]
        assert process.template_id == template.id

    async def test_missing_department(self, db, flow_env):
        with pytest.raises(NotFound):
            await create_process(db, actor=_actor(flow_env["admin"]), flow=[flow_env["departments"][0].id, 999])

    async def test_inactive_department(self, db, flow_env):
        closed = await create_department(db, name="Extinto", active=False)
        await db.commit()
        with pytest.raises(ValidationError):
            await create_process(db, actor=_actor(flow_env["admin"]), flow=[closed.id])

    @pytest.mark.parametrize("flow", [[], ["1"], [0], [True]])
    async def test_malformed_flow_rejected(self, db, flow_env, flow):
        with pytest.raises(ValidationError):
            await create_process(db, actor=_actor(flow_env["admin"]), flow=flow)

    async def test_company_name_required(self, db, flow_env):
        data = ProcessCreate(department_flow=[flow_env["departments"][0].id])
        with pytest.raises(ValidationError):
            await flow_service.create_process(db, _actor(flow_env["admin"]), data)

    async def test_questionnaire_conditions_remapped(self, db, flow_env):
        comercial = flow_env["departments"][0]
        questionnaires = {
            str(comercial.id): [
                {"id": "tmp-1", "label": "Possui funcionarios?", "type": "boolean"},
                {
                    "id": "tmp-2",
                    "label": "Quantos?",
                    "type": "number",
                    "condition": {"question_id": "tmp-1", "operator": "equals", "value": "sim"},
                },
                {
                    "id": "tmp-3",
                    "label": "Orfa",
                    "condition": {"question_id": "tmp-99", "operator": "equals", "value": "x"},
                },
            ]
        }
        process = await create_process(
            db, actor=_actor(flow_env["admin"]), flow=[comercial.id], questionnaires=questionnaires
        )
        rows = (
            await db.execute(select(Question).where(Question.process_id == process.id).order_by(Question.order))
        ).scalars().all()
        by_label = {q.label: q for q in rows}
        assert by_label["Quantos?"].condition["question_id"] == by_label["Possui funcionarios?"].id
        assert by_label["Orfa"].condition is None


# ---------------------------------------------------------------------------
# Advance
# ---------------------------------------------------------------------------


class TestAdvance:
    async def test_manager_advances_from_own_department(self, db, flow_env):
        comercial, fiscal, _ = flow_env["departments"]
        process, effects = await flow_service.advance_process(
            db, flow_env["process"].id, _actor(flow_env["managers"][0])
        )
        await db.commit()

        assert process.current_department_index == 1
        assert process.current_department_id == fiscal.id
        assert process.progress == 67

        steps = (
            await db.execute(select(FlowStep).where(FlowStep.process_id == process.id).order_by(FlowStep.order))
        ).scalars().all()
        assert [(s.department_id, s.status) for s in steps] == [
            (comercial.id, "completed"),
            (fiscal.id, "in_progress"),
        ]
        assert steps[0].exited_at is not None
        assert steps[0].completed_by_id == flow_env["managers"][0].id
        assert await _count(db, HistoryEvent, HistoryEvent.process_id == process.id, HistoryEvent.type == "MOVEMENT") == 1
        assert effects.names() == ["notify", "audit", "metrics"]

    async def test_at_last_department_fails_and_state_unchanged(self, db, flow_env):
        admin = _actor(flow_env["admin"])
        pid = flow_env["process"].id
        await flow_service.advance_process(db, pid, admin)
        await flow_service.advance_process(db, pid, admin)
        await db.commit()

        with pytest.raises(InvalidTransition):
            await flow_service.advance_process(db, pid, admin)
        await db.rollback()
        process = await db.get(Process, pid)
        await db.refresh(process)
        assert process.current_department_index == 2
        assert await _count(db, FlowStep, FlowStep.process_id == pid) == 3

    async def test_manager_of_other_department_forbidden(self, db, flow_env):
        pid = flow_env["process"].id
        with pytest.raises(Forbidden):
            await flow_service.advance_process(db, pid, _actor(flow_env["managers"][1]))
        await db.rollback()
        assert await _count(db, FlowStep, FlowStep.process_id == pid) == 1
        assert await _count(db, HistoryEvent, HistoryEvent.process_id == pid, HistoryEvent.type == "MOVEMENT") == 0

    async def test_regular_user_forbidden_even_in_same_department(self, db, flow_env):
        with pytest.raises(Forbidden):
            await flow_service.advance_process(db, flow_env["process"].id, _actor(flow_env["user"]))

    async def test_finalized_process_cannot_advance(self, db, flow_env):
        raw = await create_raw_process(db, flow=[d.id for d in flow_env["departments"]], status="finalized")
        with pytest.raises(InvalidTransition):
            await flow_service.advance_process(db, raw.id, _actor(flow_env["admin"]))

    @pytest.mark.parametrize("flow,index", [([], 0), (["a", "b"], 0), ([None, "x"], 0)])
    async def test_malformed_flow_fails_closed(self, db, flow_env, flow, index):
        raw = await create_raw_process(db, flow=flow, index=index)
        with pytest.raises(InvalidTransition):
            await flow_service.advance_process(db, raw.id, _actor(flow_env["admin"]))

    async def test_index_outside_flow_fails_closed(self, db, flow_env):
        first = flow_env["departments"][0]
        raw = await create_raw_process(db, flow=[first.id], index=5, current_department_id=first.id)
        with pytest.raises(InvalidTransition):
            await flow_service.advance_process(db, raw.id, _actor(flow_env["admin"]))

    async def test_missing_next_department(self, db, flow_env):
        first = flow_env["departments"][0]
        raw = await create_raw_process(db, flow=[first.id, 999])
        with pytest.raises(NotFound):
            await flow_service.advance_process(db, raw.id, _actor(flow_env["admin"]))

    async def test_notifications_reach_destination_managers_and_owner(self, db, flow_env):
        mover = flow_env["managers"][0]
        _, effects = await flow_service.advance_process(db, flow_env["process"].id, _actor(mover))
        await db.commit()
        warnings = await effects.dispatch(db)
        assert warnings == []

        recipients = set(
            (await db.execute(select(Notification.user_id).where(Notification.type == "process_moved")))
            .scalars()
            .all()
        )
        assert recipients == {flow_env["managers"][1].id, flow_env["admin"].id}

    async def test_at_most_one_open_step(self, db, flow_env):
        admin = _actor(flow_env["admin"])
        pid = flow_env["process"].id
        for _ in range(2):
            await flow_service.advance_process(db, pid, admin)
            await db.commit()
            open_steps = await _count(db, FlowStep, FlowStep.process_id == pid, FlowStep.status == "in_progress")
            assert open_steps == 1


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------


class TestFinalize:
    async def _to_last(self, db, env):
        admin = _actor(env["admin"])
        pid = env["process"].id
        await flow_service.advance_process(db, pid, admin)
        await flow_service.advance_process(db, pid, admin)
        await db.commit()
        return pid

    async def test_manager_finalizes_at_last_department(self, db, flow_env):
        pid = await self._to_last(db, flow_env)
        process, effects = await flow_service.finalize_process(db, pid, _actor(flow_env["managers"][2]))
        await db.commit()

        assert process.status == "finalized"
        assert process.finalized_at is not None
        assert process.progress == 100
        assert process.current_department_index == len(process.department_flow) - 1
        assert await _count(db, FlowStep, FlowStep.process_id == pid) == 3
        assert await _count(db, FlowStep, FlowStep.process_id == pid, FlowStep.status == "in_progress") == 0
        assert await _count(db, HistoryEvent, HistoryEvent.process_id == pid, HistoryEvent.type == "FINALIZE") == 1
        assert "notify" in effects.names()

    async def test_not_at_last_department(self, db, flow_env):
        with pytest.raises(InvalidTransition):
            await flow_service.finalize_process(db, flow_env["process"].id, _actor(flow_env["admin"]))

    async def test_manager_not_at_last_is_forbidden(self, db, flow_env):
        with pytest.raises(Forbidden):
            await flow_service.finalize_process(db, flow_env["process"].id, _actor(flow_env["managers"][0]))

    async def test_manager_of_other_department_forbidden(self, db, flow_env):
        pid = await self._to_last(db, flow_env)
        with pytest.raises(Forbidden):
            await flow_service.finalize_process(db, pid, _actor(flow_env["managers"][1]))

    async def test_already_finalized(self, db, flow_env):
        pid = await self._to_last(db, flow_env)
        admin = _actor(flow_env["admin"])
        await flow_service.finalize_process(db, pid, admin)
        await db.commit()
        with pytest.raises(InvalidTransition):
            await flow_service.finalize_process(db, pid, admin)


# ---------------------------------------------------------------------------
# Interlink
# ---------------------------------------------------------------------------


class TestInterlink:
    async def _finalized(self, db, env):
        admin = _actor(env["admin"])
        pid = env["process"].id
        await flow_service.advance_process(db, pid, admin)
        await flow_service.advance_process(db, pid, admin)
        await flow_service.finalize_process(db, pid, admin)
        await db.commit()
        return pid

    async def test_successor_linked_both_ways(self, db, flow_env):
        pid = await self._finalized(db, flow_env)
        fiscal = flow_env["departments"][1]
        template = await create_template(db, department_flow=[fiscal.id], name="Alteracao contratual")
        await db.commit()

        successor, _ = await flow_service.interlink_process(
            db, pid, _actor(flow_env["admin"]),
            InterlinkRequest(template_id=template.id, independent_departments=True),
        )
        await db.commit()
        source = await db.get(Process, pid)

        assert successor.interlinked_from_id == pid
        assert source.interlinked_to_id == successor.id
        assert successor.company_name == source.company_name
        assert successor.independent_departments is True
        for process_id in (pid, successor.id):
            assert await _count(
                db, HistoryEvent, HistoryEvent.process_id == process_id, HistoryEvent.type == "INTERLINK"
            ) == 1

    async def test_requires_finalized_source(self, db, flow_env):
        first = flow_env["departments"][0]
        with pytest.raises(InvalidTransition):
            await flow_service.interlink_process(
                db, flow_env["process"].id, _actor(flow_env["admin"]),
                InterlinkRequest(department_flow=[first.id]),
            )

    async def test_only_one_successor(self, db, flow_env):
        pid = await self._finalized(db, flow_env)
        first = flow_env["departments"][0]
        request = InterlinkRequest(department_flow=[first.id])
        await flow_service.interlink_process(db, pid, _actor(flow_env["admin"]), request)
        await db.commit()
        with pytest.raises(InvalidTransition):
            await flow_service.interlink_process(db, pid, _actor(flow_env["admin"]), request)


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDeleteProcess:
    async def test_archives_snapshot_and_removes_row(self, db, flow_env):
        pid = flow_env["process"].id
        warning, _ = await flow_service.delete_process(db, pid, _actor(flow_env["admin"]))
        await db.commit()

        assert warning is None
        assert await db.get(Process, pid) is None
        item = (await db.execute(select(TrashItem).where(TrashItem.entity_type == "PROCESS"))).scalar_one()
        assert item.entity_id == pid
        assert len(item.data["flow_steps"]) == 1

    async def test_regular_user_forbidden(self, db, flow_env):
        with pytest.raises(Forbidden):
            await flow_service.delete_process(db, flow_env["process"].id, _actor(flow_env["user"]))
