"""Integration tests for process comments and tags."""

from __future__ import annotations

import pytest

from processflow.services.user_cache import CurrentUser
from tests.conftest import auth_headers, create_process, create_user


@pytest.fixture
async def social_env(db, departments, admin_user):
    author = await create_user(db, role="user", department_id=departments[1].id, name="Carla")
    other = await create_user(db, role="manager", department_id=departments[0].id, name="Diego")
    await db.commit()
    process = await create_process(
        db, actor=CurrentUser.from_model(admin_user), flow=[d.id for d in departments]
    )
    return {"admin": admin_user, "author": author, "other": other, "process": process, "departments": departments}


async def _comment(client, env, text="Aguardando contrato social"):
    return await client.post(
        f"/api/v1/processes/{env['process'].id}/comments",
        json={"text": text},
        headers=auth_headers(env["author"]),
    )


# ---------------------------------------------------------------
# Comments
# ---------------------------------------------------------------


class TestComments:
    async def test_create_defaults_to_current_department(self, client, social_env):
        resp = await _comment(client, social_env)
        assert resp.status_code == 201
        data = resp.json()
        assert data["author_id"] == social_env["author"].id
        assert data["department_id"] == social_env["departments"][0].id
        assert data["edited"] is False

        history = await client.get(
            f"/api/v1/processes/{social_env['process'].id}/history", headers=auth_headers(social_env["author"])
        )
        comment_events = [e for e in history.json() if e["type"] == "COMMENT"]
        assert comment_events[0]["details"] == {"comment_id": data["id"]}

    async def test_empty_text_rejected(self, client, social_env):
        resp = await _comment(client, social_env, text="")
        assert resp.status_code == 400

    async def test_list(self, client, social_env):
        await _comment(client, social_env, "Primeiro")
        await _comment(client, social_env, "Segundo")
        resp = await client.get(
            f"/api/v1/processes/{social_env['process'].id}/comments", headers=auth_headers(social_env["other"])
        )
        assert [c["text"] for c in resp.json()] == ["Primeiro", "Segundo"]

    async def test_only_author_edits(self, client, social_env):
        comment_id = (await _comment(client, social_env)).json()["id"]
        denied = await client.patch(
            f"/api/v1/comments/{comment_id}", json={"text": "x"}, headers=auth_headers(social_env["other"])
        )
        assert denied.status_code == 403

        resp = await client.patch(
            f"/api/v1/comments/{comment_id}",
            json={"text": "Contrato recebido"},
            headers=auth_headers(social_env["author"]),
        )
        assert resp.status_code == 200
        assert resp.json()["text"] == "Contrato recebido"
        assert resp.json()["edited"] is True

    async def test_only_author_or_admin_deletes(self, client, social_env):
        comment_id = (await _comment(client, social_env)).json()["id"]
        denied = await client.delete(f"/api/v1/comments/{comment_id}", headers=auth_headers(social_env["other"]))
        assert denied.status_code == 403

        resp = await client.delete(f"/api/v1/comments/{comment_id}", headers=auth_headers(social_env["admin"]))
        assert resp.status_code == 200
        assert resp.json()["warning"] is None

        missing = await client.patch(
            f"/api/v1/comments/{comment_id}", json={"text": "x"}, headers=auth_headers(social_env["author"])
        )
        assert missing.status_code == 404

    async def test_author_restores_own_comment(self, client, social_env):
        comment_id = (await _comment(client, social_env, "Vou apagar")).json()["id"]
        headers = auth_headers(social_env["author"])
        await client.delete(f"/api/v1/comments/{comment_id}", headers=headers)

        (item,) = (await client.get("/api/v1/trash", params={"entity_type": "COMMENT"}, headers=headers)).json()
        restored = await client.post(f"/api/v1/trash/{item['id']}/restore", headers=headers)
        assert restored.status_code == 200

        listing = await client.get(f"/api/v1/processes/{social_env['process'].id}/comments", headers=headers)
        assert [c["text"] for c in listing.json()] == ["Vou apagar"]


# ---------------------------------------------------------------
# Tags
# ---------------------------------------------------------------


class TestTags:
    async def test_manager_creates_tag(self, client, social_env):
        resp = await client.post(
            "/api/v1/tags", json={"name": "Urgente", "color": "#ff0000"}, headers=auth_headers(social_env["other"])
        )
        assert resp.status_code == 201
        assert resp.json()["name"] == "Urgente"

    async def test_duplicate_name_case_insensitive(self, client, social_env):
        headers = auth_headers(social_env["admin"])
        await client.post("/api/v1/tags", json={"name": "Urgente"}, headers=headers)
        resp = await client.post("/api/v1/tags", json={"name": "  urgente "}, headers=headers)
        assert resp.status_code == 409

    async def test_user_cannot_manage_tags(self, client, social_env):
        resp = await client.post("/api/v1/tags", json={"name": "X"}, headers=auth_headers(social_env["author"]))
        assert resp.status_code == 403

    async def test_apply_and_remove_is_idempotent(self, client, social_env):
        tag_id = (
            await client.post("/api/v1/tags", json={"name": "Simples"}, headers=auth_headers(social_env["admin"]))
        ).json()["id"]
        pid = social_env["process"].id
        headers = auth_headers(social_env["author"])

        for _ in range(2):
            resp = await client.post(f"/api/v1/processes/{pid}/tags/{tag_id}", headers=headers)
            assert resp.status_code == 200
            assert resp.json()["tag"]["name"] == "Simples"

        detail = await client.get(f"/api/v1/processes/{pid}", headers=headers)
        assert [t["id"] for t in detail.json()["tags"]] == [tag_id]

        filtered = await client.get("/api/v1/processes", params={"tag_id": tag_id}, headers=headers)
        assert [p["id"] for p in filtered.json()] == [pid]

        for _ in range(2):
            resp = await client.delete(f"/api/v1/processes/{pid}/tags/{tag_id}", headers=headers)
            assert resp.json() == {"process_id": pid, "removed": tag_id}

        history = await client.get(f"/api/v1/processes/{pid}/history", headers=headers)
        tag_events = [e["details"] for e in history.json() if e["type"] == "TAG"]
        assert tag_events == [{"tag_id": tag_id, "added": True}, {"tag_id": tag_id, "added": False}]

    async def test_unknown_tag(self, client, social_env):
        resp = await client.post(
            f"/api/v1/processes/{social_env['process'].id}/tags/9999", headers=auth_headers(social_env["admin"])
        )
        assert resp.status_code == 404
