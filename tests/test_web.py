"""Tests for the HTTP API."""

import json
import os
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from mission_control.core import agents as agents_mod
from mission_control.core import completion as completion_mod
from mission_control.core import planning as planning_mod
from mission_control.core import tasks as tasks_mod
from mission_control.db.engine import init_db
from mission_control.web.app import create_app

SECRET = "webhook-secret"


@pytest.fixture
def web_env(gateway):
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {
            "MC_DB_PATH": str(db_path),
            "WEBHOOK_SECRET": SECRET,
            "MC_PLANNING_POLL_ATTEMPTS": "2",
            "MC_PLANNING_POLL_INTERVAL": "0",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        # Seed data
        db = init_db(db_path)
        writer = agents_mod.create_agent(db, "Writer")
        main = agents_mod.create_agent(db, "Main", is_master=True)
        agents_mod.create_agent(db, "Backup", is_master=True)
        report = tasks_mod.create_task(db, "Write report", assigned_agent_id=writer.id)
        coordinate = tasks_mod.create_task(db, "Coordinate", assigned_agent_id=main.id)
        idea = tasks_mod.create_task(db, "Vague idea", "Needs planning")
        db.close()

        app = create_app(gateway=gateway)
        client = TestClient(app)
        yield {
            "client": client,
            "app": app,
            "gateway": gateway,
            "db_path": db_path,
            "writer": writer,
            "report": report,
            "coordinate": coordinate,
            "idea": idea,
        }

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    sig = completion_mod.compute_signature(SECRET, body)
    return body, {completion_mod.SIGNATURE_HEADER: sig, "content-type": "application/json"}


def _task_status(env, task_id):
    db = init_db(env["db_path"])
    try:
        return tasks_mod.get_task(db, task_id).status
    finally:
        db.close()


class TestTasksAPI:
    def test_list_tasks(self, web_env):
        resp = web_env["client"].get("/api/tasks")
        assert resp.status_code == 200
        assert len(resp.json()) == 3

    def test_list_filtered(self, web_env):
        resp = web_env["client"].get("/api/tasks", params={"status": "inbox"})
        assert [t["title"] for t in resp.json()] == ["Vague idea"]

    def test_get_task(self, web_env):
        task_id = web_env["report"].id
        resp = web_env["client"].get(f"/api/tasks/{task_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["title"] == "Write report"
        assert data["status"] == "assigned"
        assert data["activities"][0]["activity_type"] == "spawned"
        assert data["deliverables"] == []

    def test_get_nonexistent_task(self, web_env):
        resp = web_env["client"].get("/api/tasks/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Task not found", "task_id": "nope"}


class TestDispatchAPI:
    def test_dispatch(self, web_env):
        task_id = web_env["report"].id
        resp = web_env["client"].post(f"/api/tasks/{task_id}/dispatch")
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"]
        assert data["agent_id"] == web_env["writer"].id
        assert data["session_id"] == "mission-control-writer"
        assert _task_status(web_env, task_id) == "in_progress"
        assert len(web_env["gateway"].sent) == 1

    def test_orchestrator_conflict(self, web_env):
        task_id = web_env["coordinate"].id
        resp = web_env["client"].post(f"/api/tasks/{task_id}/dispatch")
        assert resp.status_code == 409
        data = resp.json()
        assert data["success"] is False
        assert data["warning"] == "Other orchestrators available"
        assert [o["name"] for o in data["otherOrchestrators"]] == ["Backup"]
        assert web_env["gateway"].sent == []
        assert _task_status(web_env, task_id) == "assigned"

    def test_unassigned(self, web_env):
        resp = web_env["client"].post(f"/api/tasks/{web_env['idea'].id}/dispatch")
        assert resp.status_code == 400
        assert "no assigned agent" in resp.json()["error"]

    def test_gateway_down(self, web_env):
        web_env["gateway"].fail_connect = True
        resp = web_env["client"].post(f"/api/tasks/{web_env['report'].id}/dispatch")
        assert resp.status_code == 503
        assert _task_status(web_env, web_env["report"].id) == "assigned"


class TestCompletionWebhook:
    def test_end_to_end(self, web_env):
        client = web_env["client"]
        task_id = web_env["report"].id
        client.post(f"/api/tasks/{task_id}/dispatch")

        body, headers = _signed({
            "task_id": task_id,
            "status": "review",
            "summary": "done",
            "deliverables": [{"type": "file", "title": "x.txt"}],
        })
        resp = client.post("/api/webhooks/agent-completion", content=body, headers=headers)

        assert resp.status_code == 200
        assert resp.json()["new_status"] == "review"
        detail = client.get(f"/api/tasks/{task_id}").json()
        assert detail["status"] == "review"
        assert [d["title"] for d in detail["deliverables"]] == ["x.txt"]
        writer = [a for a in client.get("/api/agents").json() if a["name"] == "Writer"][0]
        assert writer["status"] == "standby"

    def test_bad_signature_rejected_before_any_write(self, web_env):
        task_id = web_env["report"].id
        body = json.dumps({"task_id": task_id, "status": "done"}).encode()
        resp = web_env["client"].post(
            "/api/webhooks/agent-completion",
            content=body,
            headers={completion_mod.SIGNATURE_HEADER: "f" * 64},
        )
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}
        assert _task_status(web_env, task_id) == "assigned"

    def test_non_ascii_signature_is_unauthorized(self, web_env):
        task_id = web_env["report"].id
        body = json.dumps({"task_id": task_id, "status": "done"}).encode()
        resp = web_env["client"].post(
            "/api/webhooks/agent-completion",
            content=body,
            headers={completion_mod.SIGNATURE_HEADER: "\u00e9abc".encode("latin-1")},
        )
        assert resp.status_code == 401
        assert _task_status(web_env, task_id) == "assigned"

    def test_missing_signature(self, web_env):
        resp = web_env["client"].post("/api/webhooks/agent-completion", content=b"{}")
        assert resp.status_code == 401

    def test_unsigned_accepted_without_secret(self, web_env):
        os.environ.pop("WEBHOOK_SECRET")
        try:
            resp = web_env["client"].post(
                "/api/webhooks/agent-completion",
                json={"task_id": web_env["report"].id, "status": "done"},
            )
        finally:
            os.environ["WEBHOOK_SECRET"] = SECRET
        assert resp.status_code == 200
        assert resp.json()["new_status"] == "done"

    def test_invalid_json(self, web_env):
        body = b"not json"
        headers = {completion_mod.SIGNATURE_HEADER: completion_mod.compute_signature(SECRET, body)}
        resp = web_env["client"].post("/api/webhooks/agent-completion", content=body, headers=headers)
        assert resp.status_code == 400

    def test_neither_shape(self, web_env):
        body, headers = _signed({"summary": "hello"})
        resp = web_env["client"].post("/api/webhooks/agent-completion", content=body, headers=headers)
        assert resp.status_code == 400
        assert "task_id or session_id" in resp.json()["error"]

    def test_session_message(self, web_env):
        client = web_env["client"]
        task_id = web_env["report"].id
        client.post(f"/api/tasks/{task_id}/dispatch")
        body, headers = _signed({
            "session_id": "mission-control-writer",
            "message": "TASK_COMPLETE: report written",
        })
        resp = client.post("/api/webhooks/agent-completion", content=body, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["task_id"] == task_id
        assert _task_status(web_env, task_id) == "testing"

    def test_session_message_bad_format(self, web_env):
        body, headers = _signed({"session_id": "mission-control-writer", "message": "done!"})
        resp = web_env["client"].post("/api/webhooks/agent-completion", content=body, headers=headers)
        assert resp.status_code == 400

    def test_unknown_session(self, web_env):
        body, headers = _signed({"session_id": "ghost", "message": "TASK_COMPLETE: x"})
        resp = web_env["client"].post("/api/webhooks/agent-completion", content=body, headers=headers)
        assert resp.status_code == 404

    def test_completion_status(self, web_env):
        client = web_env["client"]
        body, headers = _signed({"task_id": web_env["report"].id, "summary": "shipped"})
        client.post("/api/webhooks/agent-completion", content=body, headers=headers)

        resp = client.get("/api/webhooks/agent-completion")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "active"
        assert data["endpoint"] == "/api/webhooks/agent-completion"
        [recent] = data["recent_completions"]
        assert recent["task_title"] == "Write report"
        assert recent["agent_name"] == "Writer"


class TestPlanningAPI:
    def test_start_and_read(self, web_env):
        client = web_env["client"]
        task_id = web_env["idea"].id
        key = planning_mod.planning_session_key(task_id)
        web_env["gateway"].reply_on_send(key, json.dumps({"question": "Scope?", "options": []}))

        resp = client.post(f"/api/tasks/{task_id}/planning")
        assert resp.status_code == 200
        assert resp.json()["currentQuestion"]["question"] == "Scope?"

        state = client.get(f"/api/tasks/{task_id}/planning").json()
        assert state["isStarted"]
        assert state["sessionKey"] == key
        assert _task_status(web_env, task_id) == "planning"

    def test_start_twice(self, web_env):
        client = web_env["client"]
        task_id = web_env["idea"].id
        client.post(f"/api/tasks/{task_id}/planning")
        resp = client.post(f"/api/tasks/{task_id}/planning")
        assert resp.status_code == 400
        assert resp.json()["sessionKey"] == planning_mod.planning_session_key(task_id)

    def test_waiting_then_reconciled_on_read(self, web_env):
        client = web_env["client"]
        task_id = web_env["idea"].id
        resp = client.post(f"/api/tasks/{task_id}/planning")
        assert resp.json()["note"] == planning_mod.WAITING_NOTE

        web_env["gateway"].reply(
            planning_mod.planning_session_key(task_id), '```json\n{"question": "Q?"}\n```'
        )
        state = client.get(f"/api/tasks/{task_id}/planning").json()
        assert state["currentQuestion"] == {"question": "Q?"}

    def test_answer(self, web_env):
        client = web_env["client"]
        task_id = web_env["idea"].id
        key = planning_mod.planning_session_key(task_id)
        gw = web_env["gateway"]
        gw.reply_on_send(key, json.dumps({"question": "Scope?", "options": []}))
        gw.reply_on_send(key, json.dumps({"status": "complete", "spec": {"title": "T"}, "agents": []}))
        client.post(f"/api/tasks/{task_id}/planning")

        resp = client.post(f"/api/tasks/{task_id}/planning/answer", json={"answer": "Small"})
        assert resp.status_code == 200
        assert resp.json()["isComplete"]
        assert _task_status(web_env, task_id) == "inbox"

    def test_answer_requires_text(self, web_env):
        client = web_env["client"]
        task_id = web_env["idea"].id
        client.post(f"/api/tasks/{task_id}/planning")
        resp = client.post(f"/api/tasks/{task_id}/planning/answer", json={})
        assert resp.status_code == 400

    def test_answer_bad_body(self, web_env):
        task_id = web_env["idea"].id
        resp = web_env["client"].post(
            f"/api/tasks/{task_id}/planning/answer", content=b"[1]",
            headers={"content-type": "application/json"},
        )
        assert resp.status_code == 400

    def test_background_watcher(self, web_env, monkeypatch):
        monkeypatch.setenv("MC_PLANNING_BACKGROUND", "1")
        monkeypatch.setenv("MC_PLANNING_POLL_ATTEMPTS", "50")
        client = web_env["client"]
        task_id = web_env["idea"].id
        key = planning_mod.planning_session_key(task_id)
        web_env["gateway"].reply_on_send(key, json.dumps({"question": "Scope?"}))

        resp = client.post(f"/api/tasks/{task_id}/planning")
        assert resp.json()["note"] == planning_mod.WAITING_NOTE

        [watcher] = web_env["app"].state.watchers
        watcher.join(timeout=5)
        assert watcher.found
        state = client.get(f"/api/tasks/{task_id}/planning").json()
        assert state["currentQuestion"] == {"question": "Scope?"}

    def test_finished_watchers_are_dropped(self, web_env, monkeypatch):
        monkeypatch.setenv("MC_PLANNING_BACKGROUND", "1")
        client = web_env["client"]
        gateway = web_env["gateway"]
        for task in (web_env["idea"], web_env["report"]):
            key = planning_mod.planning_session_key(task.id)
            gateway.reply_on_send(key, json.dumps({"question": "Scope?"}))

        client.post(f"/api/tasks/{web_env['idea'].id}/planning")
        [first] = web_env["app"].state.watchers
        first.join(timeout=5)
        assert not first.is_alive()

        client.post(f"/api/tasks/{web_env['report'].id}/planning")
        [second] = web_env["app"].state.watchers
        assert second is not first

    def test_planning_unknown_task(self, web_env):
        resp = web_env["client"].get("/api/tasks/nope/planning")
        assert resp.status_code == 404


class TestAgentGatewayAPI:
    def test_link_lifecycle(self, web_env):
        client = web_env["client"]
        agent_id = web_env["writer"].id
        url = f"/api/agents/{agent_id}/gateway"

        assert client.get(url).json() == {"linked": False, "session": None}

        resp = client.post(url)
        assert resp.status_code == 201
        assert resp.json()["session"]["external_session_id"] == "mission-control-writer"

        assert client.get(url).json()["linked"]
        assert client.post(url).status_code == 409

        resp = client.delete(url)
        assert resp.status_code == 200
        assert resp.json() == {"linked": False, "success": True}
        assert client.delete(url).status_code == 404

    def test_link_existing_session(self, web_env):
        url = f"/api/agents/{web_env['writer'].id}/gateway"
        resp = web_env["client"].post(url, json={"external_session_id": "ext-42"})
        assert resp.json()["session"]["external_session_id"] == "ext-42"

    def test_link_unknown_agent(self, web_env):
        resp = web_env["client"].post("/api/agents/nope/gateway")
        assert resp.status_code == 404

    def test_link_gateway_down(self, web_env):
        web_env["gateway"].fail_connect = True
        url = f"/api/agents/{web_env['writer'].id}/gateway"
        assert web_env["client"].post(url).status_code == 503
        assert web_env["client"].get(url).json()["linked"] is False


class TestAgentsAPI:
    def test_list_agents(self, web_env):
        resp = web_env["client"].get("/api/agents")
        assert resp.status_code == 200
        names = [a["name"] for a in resp.json()]
        assert names == ["Backup", "Main", "Writer"]
