"""MCP server exposing mission control tools to agents."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from mission_control.config import Config, get_config
from mission_control.core import activity as activity_mod
from mission_control.core import completion as completion_mod
from mission_control.core import dispatch as dispatch_mod
from mission_control.core import planning as planning_mod
from mission_control.core import sessions as sessions_mod
from mission_control.core import tasks as tasks_mod
from mission_control.core.errors import MissionControlError
from mission_control.db.engine import init_db
from mission_control.integrations.gateway import GatewayClient, get_gateway_client
from mission_control.web.serializers import (
    deliverable_dict,
    orchestrator_dict,
    session_dict,
    task_dict,
)


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    gateway: GatewayClient


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close it and the gateway on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    gateway = get_gateway_client(config)
    try:
        yield AppContext(db=db, config=config, gateway=gateway)
    finally:
        gateway.close()
        db.close()


mcp = FastMCP("mission-control", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(
    ctx: Context,
    status: str | None = None,
    agent_id: str | None = None,
    workspace_id: str | None = None,
) -> list[dict]:
    """List tasks, optionally filtered by status, assigned agent and workspace."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(
        app.db, workspace_id=workspace_id, status=status, assigned_agent_id=agent_id
    )
    return [task_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its deliverables."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    td = task_dict(task)
    td["deliverables"] = [
        deliverable_dict(d) for d in activity_mod.get_task_deliverables(app.db, task_id)
    ]
    return td


@mcp.tool()
def dispatch_task(ctx: Context, task_id: str) -> dict:
    """Send a task to its assigned agent's gateway session.

    If the assignee is an orchestrator and other orchestrators are available in
    the workspace, nothing is sent and the alternatives are returned instead.
    """
    app = _ctx(ctx)
    try:
        outcome = dispatch_mod.dispatch_task(app.db, app.gateway, app.config, task_id)
    except MissionControlError as e:
        return e.to_dict()
    if not outcome.dispatched:
        return {
            "success": False,
            "warning": outcome.warning,
            "otherOrchestrators": [orchestrator_dict(a) for a in outcome.other_orchestrators],
        }
    return {
        "success": True,
        "task_id": outcome.task.id,
        "agent_id": outcome.agent.id,
        "session_id": outcome.session.external_session_id,
    }


@mcp.tool()
def report_completion(
    ctx: Context,
    task_id: str,
    summary: str = "",
    status: str = "review",
    deliverables: list[dict] | None = None,
) -> dict:
    """Report that you finished a task. Status: testing, review or done.

    Each deliverable is {"type": "file"|"url"|"artifact", "title": ..., "path": ...}.
    A task never moves backwards, so reporting twice is harmless.
    """
    app = _ctx(ctx)
    try:
        return completion_mod.complete_task(
            app.db, task_id, status=status, summary=summary, deliverables=deliverables
        )
    except MissionControlError as e:
        return e.to_dict()


# ── Planning Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def get_planning_state(ctx: Context, task_id: str) -> dict:
    """Get the planning conversation, current question and final spec for a task."""
    app = _ctx(ctx)
    try:
        return planning_mod.get_planning_state(app.db, app.gateway, task_id)
    except MissionControlError as e:
        return e.to_dict()


# ── Gateway Link Tools ────────────────────────────────────────────────────────


@mcp.tool()
def link_agent(ctx: Context, agent_id: str, external_session_id: str | None = None) -> dict:
    """Link an agent to the gateway, optionally to an existing external session."""
    app = _ctx(ctx)
    try:
        session = sessions_mod.link_agent(app.db, app.gateway, agent_id, external_session_id)
    except MissionControlError as e:
        return e.to_dict()
    return {"linked": True, "session": session_dict(session)}


@mcp.tool()
def unlink_agent(ctx: Context, agent_id: str) -> dict:
    """Deactivate an agent's gateway session."""
    app = _ctx(ctx)
    try:
        session = sessions_mod.unlink_agent(app.db, agent_id)
    except MissionControlError as e:
        return e.to_dict()
    return {"linked": False, "session": session_dict(session)}
