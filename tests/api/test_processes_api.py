"""Integration tests for the /processes endpoints."""

from __future__ import annotations

import pytest

from tests.conftest import auth_headers, create_template, create_user


@pytest.fixture
async def proc_env(db, departments, admin_user):
    comercial, fiscal, contabil = departments
    managers = [
        await create_user(db, role="manager", department_id=d.id, name=f"Gerente {d.name}")
        for d in departments
    ]
    clerk = await create_user(db, role="user", department_id=comercial.id, name="Atendente")
    await db.commit()
    return {
        "admin": admin_user,
        "managers": managers,
        "clerk": clerk,
        "flow": [d.id for d in departments],
        "departments": departments,
    }


async def _create(client, user, flow, **extra):
    body = {"company_name": "Padaria Central Ltda", "department_flow": flow, **extra}
    return await client.post("/api/v1/processes", json=body, headers=auth_headers(user))


# ---------------------------------------------------------------
# POST /processes  (create)
# ---------------------------------------------------------------


class TestCreateProcess:
    async def test_admin_creates_custom_flow(self, client, proc_env):
        resp = await _create(client, proc_env["admin"], proc_env["flow"])
        assert resp.status_code == 201
        body = resp.json()
        assert body["warnings"] == []
        process = body["process"]
        assert process["status"] == "in_progress"
        assert process["current_department_index"] == 0
        assert process["progress"] == 33
        assert process["department_flow"] == proc_env["flow"]

    async def test_user_custom_flow_forbidden(self, client, proc_env):
        resp = await _create(client, proc_env["clerk"], proc_env["flow"])
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"

    async def test_user_from_template(self, client, db, proc_env):
        template = await create_template(db, department_flow=proc_env["flow"][:2])
        await db.commit()
        resp = await client.post(
            "/api/v1/processes",
            json={"company_name": "Oficina do Joao", "template_id": template.id},
            headers=auth_headers(proc_env["clerk"]),
        )
        assert resp.status_code == 201
        assert resp.json()["process"]["template_id"] == template.id

    async def test_empty_flow_is_validation_error(self, client, proc_env):
        resp = await _create(client, proc_env["admin"], [])
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"

    async def test_unknown_department_is_not_found(self, client, proc_env):
        resp = await _create(client, proc_env["admin"], [proc_env["flow"][0], 9999])
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_bad_priority_is_request_validation_error(self, client, proc_env):
        resp = await _create(client, proc_env["admin"], proc_env["flow"], priority="urgent")
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "validation_error"
        assert body["detail"].startswith("priority")

    async def test_unauthenticated(self, client, proc_env):
        resp = await client.post("/api/v1/processes", json={"department_flow": proc_env["flow"]})
        assert resp.status_code == 401


# ---------------------------------------------------------------
# GET /processes
# ---------------------------------------------------------------


class TestReadProcesses:
    async def test_list_and_filters(self, client, proc_env):
        admin = proc_env["admin"]
        await _create(client, admin, proc_env["flow"])
        await _create(client, admin, proc_env["flow"][1:], company_name="Mercado Boa Vista")

        resp = await client.get("/api/v1/processes", headers=auth_headers(admin))
        assert resp.status_code == 200
        assert len(resp.json()) == 2

        resp = await client.get(
            "/api/v1/processes",
            params={"department_id": proc_env["flow"][1]},
            headers=auth_headers(admin),
        )
        assert [p["company_name"] for p in resp.json()] == ["Mercado Boa Vista"]

        resp = await client.get("/api/v1/processes", params={"search": "padaria"}, headers=auth_headers(admin))
        assert [p["company_name"] for p in resp.json()] == ["Padaria Central Ltda"]

    async def test_detail_includes_steps(self, client, proc_env):
        created = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]
        resp = await client.get(f"/api/v1/processes/{created['id']}", headers=auth_headers(proc_env["clerk"]))
        assert resp.status_code == 200
        data = resp.json()
        assert [s["status"] for s in data["flow_steps"]] == ["in_progress"]
        assert data["tags"] == []

    async def test_missing_process(self, client, proc_env):
        resp = await client.get("/api/v1/processes/9999", headers=auth_headers(proc_env["admin"]))
        assert resp.status_code == 404
        assert resp.json() == {"error": "not_found", "detail": "Process 9999 not found"}


# ---------------------------------------------------------------
# Flow transitions
# ---------------------------------------------------------------


class TestTransitions:
    async def test_full_lifecycle(self, client, proc_env):
        managers = proc_env["managers"]
        pid = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]["id"]

        resp = await client.post(f"/api/v1/processes/{pid}/advance", headers=auth_headers(managers[0]))
        assert resp.status_code == 200
        assert resp.json()["process"]["progress"] == 67
        assert resp.json()["warnings"] == []

        resp = await client.post(f"/api/v1/processes/{pid}/advance", headers=auth_headers(managers[1]))
        assert resp.json()["process"]["current_department_id"] == proc_env["flow"][2]

        resp = await client.post(f"/api/v1/processes/{pid}/advance", headers=auth_headers(managers[2]))
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

        resp = await client.post(f"/api/v1/processes/{pid}/finalize", headers=auth_headers(managers[2]))
        assert resp.status_code == 200
        body = resp.json()
        assert body["process"]["status"] == "finalized"
        assert body["process"]["progress"] == 100
        assert body["interlink_available"] is True

        history = await client.get(f"/api/v1/processes/{pid}/history", headers=auth_headers(proc_env["clerk"]))
        assert [e["type"] for e in history.json()] == ["START", "MOVEMENT", "MOVEMENT", "FINALIZE"]

    async def test_wrong_department_manager_forbidden(self, client, proc_env):
        pid = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]["id"]
        resp = await client.post(
            f"/api/v1/processes/{pid}/advance", headers=auth_headers(proc_env["managers"][2])
        )
        assert resp.status_code == 403

    async def test_interlink(self, client, proc_env):
        admin = proc_env["admin"]
        pid = (await _create(client, admin, proc_env["flow"][:1])).json()["process"]["id"]
        await client.post(f"/api/v1/processes/{pid}/finalize", headers=auth_headers(admin))

        resp = await client.post(
            f"/api/v1/processes/{pid}/interlink",
            json={"department_flow": proc_env["flow"][1:], "service": "Alteracao contratual"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["source_id"] == pid
        assert body["process"]["interlinked_from_id"] == pid
        assert body["process"]["company_name"] == "Padaria Central Ltda"

        again = await client.post(
            f"/api/v1/processes/{pid}/interlink",
            json={"department_flow": proc_env["flow"][1:]},
            headers=auth_headers(admin),
        )
        assert again.status_code == 409

    async def test_permissions_endpoint(self, client, proc_env):
        pid = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]["id"]
        resp = await client.get(
            f"/api/v1/processes/{pid}/permissions", headers=auth_headers(proc_env["managers"][0])
        )
        perms = resp.json()["permissions"]
        assert perms["move_process"] is True
        assert perms["finalize_process"] is False
        assert perms["manage_users"] is False


# ---------------------------------------------------------------
# Edit / delete
# ---------------------------------------------------------------


class TestEditDelete:
    async def test_admin_edits(self, client, proc_env):
        pid = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]["id"]
        resp = await client.patch(
            f"/api/v1/processes/{pid}",
            json={"notes": "Cliente pediu urgencia", "priority": "high"},
            headers=auth_headers(proc_env["admin"]),
        )
        assert resp.status_code == 200
        assert resp.json()["process"]["priority"] == "high"

    async def test_manager_cannot_edit(self, client, proc_env):
        pid = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]["id"]
        resp = await client.patch(
            f"/api/v1/processes/{pid}",
            json={"notes": "x"},
            headers=auth_headers(proc_env["managers"][0]),
        )
        assert resp.status_code == 403

    async def test_manager_deletes_in_own_department(self, client, proc_env):
        pid = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]["id"]
        resp = await client.delete(f"/api/v1/processes/{pid}", headers=auth_headers(proc_env["managers"][0]))
        assert resp.status_code == 200
        body = resp.json()
        assert body["warning"] is None
        assert body["days_until_expiry"] == 15

        gone = await client.get(f"/api/v1/processes/{pid}", headers=auth_headers(proc_env["admin"]))
        assert gone.status_code == 404


# ---------------------------------------------------------------
# Questionnaires
# ---------------------------------------------------------------


class TestQuestionnaireEndpoints:
    async def test_fill_and_read(self, client, proc_env):
        comercial = proc_env["flow"][0]
        resp = await _create(
            client,
            proc_env["admin"],
            proc_env["flow"],
            questionnaires={
                str(comercial): [
                    {"id": "t1", "label": "Regime", "type": "selecao", "options": ["MEI", "Simples"]},
                    {"id": "t2", "label": "CNPJ do MEI", "required": True,
                     "condition": {"question_id": "t1", "value": "MEI"}},
                ]
            },
        )
        pid = resp.json()["process"]["id"]
        url = f"/api/v1/processes/{pid}/questionnaires/{comercial}"

        view = (await client.get(url, headers=auth_headers(proc_env["clerk"]))).json()
        regime, cnpj = view["questions"]
        assert regime["type"] == "select"
        assert cnpj["visible"] is False

        saved = await client.post(
            f"/api/v1/processes/{pid}/answers",
            json={"answers": {str(regime["id"]): "MEI"}},
            headers=auth_headers(proc_env["clerk"]),
        )
        assert saved.status_code == 200
        assert saved.json()["saved"] == 1

        view = (await client.get(url, headers=auth_headers(proc_env["clerk"]))).json()
        assert view["questions"][1]["visible"] is True
        assert view["missing_required"] == 1

    async def test_fill_from_other_department_forbidden(self, client, db, proc_env):
        outsider = await create_user(db, role="user", department_id=proc_env["flow"][2])
        await db.commit()
        pid = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]["id"]
        resp = await client.post(
            f"/api/v1/processes/{pid}/answers",
            json={"answers": {}},
            headers=auth_headers(outsider),
        )
        assert resp.status_code == 403

    async def test_non_numeric_question_id(self, client, proc_env):
        pid = (await _create(client, proc_env["admin"], proc_env["flow"])).json()["process"]["id"]
        resp = await client.post(
            f"/api/v1/processes/{pid}/answers",
            json={"answers": {"abc": "x"}},
            headers=auth_headers(proc_env["admin"]),
        )
        assert resp.status_code == 400
