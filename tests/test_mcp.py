"""Tests for the MCP tool functions."""

import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from mission_control.config import Config
from mission_control.core import agents as agents_mod
from mission_control.core import tasks as tasks_mod
from mission_control.db.engine import init_db
from mission_control.mcp import server


@pytest.fixture
def ctx(gateway):
    """A stand-in MCP Context carrying the lifespan AppContext."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        db = init_db(db_path)
        app = server.AppContext(db=db, config=Config(db_path=db_path), gateway=gateway)
        yield SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))
        db.close()


def _db(ctx):
    return ctx.request_context.lifespan_context.db


class TestTaskTools:
    def test_list_and_get(self, ctx):
        task = tasks_mod.create_task(_db(ctx), "Write report")
        assert [t["title"] for t in server.list_tasks(ctx)] == ["Write report"]
        assert server.list_tasks(ctx, status="done") == []
        detail = server.get_task(ctx, task.id)
        assert detail["status"] == "inbox"
        assert detail["deliverables"] == []

    def test_get_missing(self, ctx):
        assert "error" in server.get_task(ctx, "nope")

    def test_dispatch_and_report(self, ctx, gateway):
        db = _db(ctx)
        agent = agents_mod.create_agent(db, "Writer")
        task = tasks_mod.create_task(db, "Write report", assigned_agent_id=agent.id)

        result = server.dispatch_task(ctx, task.id)
        assert result["success"]
        assert result["session_id"] == "mission-control-writer"

        result = server.report_completion(
            ctx, task.id, summary="done", status="review",
            deliverables=[{"type": "url", "title": "Preview", "path": "http://x"}],
        )
        assert result["new_status"] == "review"
        assert result["deliverables_registered"] == 1
        assert server.get_task(ctx, task.id)["deliverables"][0]["deliverable_type"] == "url"

    def test_dispatch_conflict(self, ctx, gateway):
        db = _db(ctx)
        main = agents_mod.create_agent(db, "Main", is_master=True)
        agents_mod.create_agent(db, "Backup", is_master=True)
        task = tasks_mod.create_task(db, "Coordinate", assigned_agent_id=main.id)
        result = server.dispatch_task(ctx, task.id)
        assert result["success"] is False
        assert result["otherOrchestrators"][0]["name"] == "Backup"
        assert gateway.sent == []

    def test_dispatch_error(self, ctx):
        task = tasks_mod.create_task(_db(ctx), "Orphan")
        assert server.dispatch_task(ctx, task.id) == {"error": "Task has no assigned agent"}

    def test_report_unknown_task(self, ctx):
        result = server.report_completion(ctx, "nope")
        assert result == {"error": "Task not found", "task_id": "nope"}


class TestLinkTools:
    def test_link_unlink(self, ctx):
        agent = agents_mod.create_agent(_db(ctx), "Writer")
        assert server.link_agent(ctx, agent.id)["linked"]
        assert "error" in server.link_agent(ctx, agent.id)
        result = server.unlink_agent(ctx, agent.id)
        assert not result["linked"]
        assert result["session"]["status"] == "inactive"

    def test_planning_state(self, ctx):
        task = tasks_mod.create_task(_db(ctx), "Idea")
        state = server.get_planning_state(ctx, task.id)
        assert not state["isStarted"]
