"""CLI entry point for mission control."""

import json
import sys

import click

from mission_control.config import get_config
from mission_control.core import activity as activity_mod
from mission_control.core import agents as agents_mod
from mission_control.core import completion as completion_mod
from mission_control.core import dispatch as dispatch_mod
from mission_control.core import planning as planning_mod
from mission_control.core import sessions as sessions_mod
from mission_control.core import tasks as tasks_mod
from mission_control.core import workspaces as workspaces_mod
from mission_control.core.errors import MissionControlError
from mission_control.core.status import TASK_PRIORITIES, TASK_STATUS_ORDER
from mission_control.db.engine import get_db
from mission_control.integrations.gateway import get_gateway_client
from mission_control.web.serializers import task_dict


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(e: MissionControlError):
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


@click.group()
def main():
    """mc - Mission Control CLI"""
    pass


# ── Workspace Commands ───────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Manage workspaces."""
    pass


@workspace_group.command("add")
@click.argument("workspace_id")
@click.option("--name", default=None, help="Display name (defaults to the ID)")
def workspace_add(workspace_id, name):
    """Create a workspace."""
    with _get_db() as db:
        workspace = workspaces_mod.create_workspace(db, workspace_id, name or workspace_id)
        click.echo(f"Workspace created: {workspace.id} ({workspace.name})")


@workspace_group.command("list")
def workspace_list():
    """List workspaces."""
    with _get_db() as db:
        for w in workspaces_mod.list_workspaces(db):
            click.echo(f"  {w.id}: {w.name}")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage agents and their gateway sessions."""
    pass


@agent_group.command("add")
@click.argument("name")
@click.option("--workspace", default="default", help="Workspace ID")
@click.option("--master", is_flag=True, help="Register as an orchestrator agent")
@click.option("--role", default="", help="Free-text role")
def agent_add(name, workspace, master, role):
    """Register an agent."""
    with _get_db() as db:
        workspaces_mod.ensure_workspace(db, workspace)
        try:
            agent = agents_mod.create_agent(db, name, workspace, is_master=master, role=role)
        except MissionControlError as e:
            _fail(e)
        click.echo(f"Created agent: {agent.id}")
        click.echo(f"  Name: {agent.name}")
        if agent.is_master:
            click.echo("  Orchestrator: yes")


@agent_group.command("list")
@click.option("--workspace", default=None, help="Workspace ID")
def agent_list(workspace):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, workspace_id=workspace)
        if not agents:
            click.echo("No agents found.")
            return
        for a in agents:
            master = " [orchestrator]" if a.is_master else ""
            linked = " [linked]" if sessions_mod.get_active_session(db, a.id) else ""
            click.echo(f"  {a.id}: {a.name} ({a.status}){master}{linked}")


@agent_group.command("link")
@click.argument("agent_id")
@click.option("--session-id", default=None, help="Link to an existing external session")
def agent_link(agent_id, session_id):
    """Link an agent to the agent gateway."""
    config = get_config()
    gateway = get_gateway_client(config)
    with _get_db() as db:
        try:
            session = sessions_mod.link_agent(db, gateway, agent_id, session_id)
        except MissionControlError as e:
            _fail(e)
        finally:
            gateway.close()
        click.echo(f"Linked {agent_id} to session {session.external_session_id}")


@agent_group.command("unlink")
@click.argument("agent_id")
def agent_unlink(agent_id):
    """Deactivate an agent's gateway session."""
    with _get_db() as db:
        try:
            session = sessions_mod.unlink_agent(db, agent_id)
        except MissionControlError as e:
            _fail(e)
        click.echo(f"Unlinked {agent_id} from session {session.external_session_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default=None, help="Task description")
@click.option("--priority", "-p", default="normal", type=click.Choice(TASK_PRIORITIES))
@click.option("--agent", default=None, help="Assign to this agent ID")
@click.option("--workspace", default="default", help="Workspace ID")
@click.option("--due", default=None, help="Due date")
def task_add(title, description, priority, agent, workspace, due):
    """Create a new task."""
    with _get_db() as db:
        workspaces_mod.ensure_workspace(db, workspace)
        try:
            task = tasks_mod.create_task(
                db, title, description, priority,
                assigned_agent_id=agent, workspace_id=workspace, due_date=due,
            )
        except MissionControlError as e:
            _fail(e)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--workspace", default=None, help="Workspace ID")
@click.option("--status", default=None, type=click.Choice(TASK_STATUS_ORDER))
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(workspace, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, workspace_id=workspace, status=status)

        if json_output:
            click.echo(json.dumps([task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            agent = f" [agent: {task.assigned_agent_id}]" if task.assigned_agent_id else ""
            click.echo(f"  {task.id}: {task.title} ({task.status}, {task.priority}){agent}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Priority: {task.priority}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: {task.assigned_agent_id}")
        if task.due_date:
            click.echo(f"  Due: {task.due_date}")

        deliverables = activity_mod.get_task_deliverables(db, task_id)
        if deliverables:
            click.echo("  Deliverables:")
            for d in deliverables:
                path = f" -> {d.path}" if d.path else ""
                click.echo(f"    [{d.deliverable_type}] {d.title}{path}")

        activities = activity_mod.get_task_activities(db, task_id)
        if activities:
            click.echo("  Activity:")
            for a in activities:
                click.echo(f"    [{a.created_at}] {a.activity_type}: {a.message}")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("agent_id")
def task_assign(task_id, agent_id):
    """Assign a task to an agent."""
    with _get_db() as db:
        try:
            task = tasks_mod.assign_task(db, task_id, agent_id)
        except MissionControlError as e:
            _fail(e)
        click.echo(f"Assigned {task.id} to {agent_id} ({task.status})")


@task_group.command("dispatch")
@click.argument("task_id")
def task_dispatch(task_id):
    """Send a task to its assigned agent."""
    config = get_config()
    gateway = get_gateway_client(config)
    with _get_db() as db:
        try:
            outcome = dispatch_mod.dispatch_task(db, gateway, config, task_id)
        except MissionControlError as e:
            _fail(e)
        finally:
            gateway.close()
        if not outcome.dispatched:
            click.echo(f"Not dispatched: {outcome.warning}", err=True)
            sys.exit(2)
        click.echo(f"Dispatched {task_id} to {outcome.agent.name}")
        click.echo(f"  Session: {outcome.session.external_session_id}")


# ── Planning Commands ────────────────────────────────────────────────────────


@main.group("planning")
def planning_group():
    """Run the planning exchange for a task."""
    pass


def _echo_planning(result: dict):
    if question := result.get("currentQuestion"):
        click.echo(f"Q: {question.get('question')}")
        for opt in question.get("options") or []:
            click.echo(f"  {opt.get('id')}) {opt.get('label')}")
    elif result.get("isComplete"):
        click.echo("Planning complete.")
        click.echo(json.dumps(result.get("spec"), indent=2))
    elif raw := result.get("rawResponse"):
        click.echo(raw)
    elif note := result.get("note"):
        click.echo(note)


@planning_group.command("start")
@click.argument("task_id")
@click.option("--wait/--no-wait", default=True, help="Poll for the agent's first question")
def planning_start(task_id, wait):
    """Start planning a task."""
    config = get_config()
    gateway = get_gateway_client(config)
    with _get_db() as db:
        try:
            result = planning_mod.start_planning(
                db, gateway, task_id,
                attempts=config.planning_poll_attempts,
                interval=config.planning_poll_interval,
                wait=wait,
            )
        except MissionControlError as e:
            _fail(e)
        finally:
            gateway.close()
        _echo_planning(result)


@planning_group.command("answer")
@click.argument("task_id")
@click.argument("answer")
def planning_answer(task_id, answer):
    """Answer the current planning question."""
    config = get_config()
    gateway = get_gateway_client(config)
    with _get_db() as db:
        try:
            result = planning_mod.answer_planning(
                db, gateway, task_id, answer,
                attempts=config.planning_poll_attempts,
                interval=config.planning_poll_interval,
            )
        except MissionControlError as e:
            _fail(e)
        finally:
            gateway.close()
        _echo_planning(result)


@planning_group.command("show")
@click.argument("task_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def planning_show(task_id, json_output):
    """Show the planning state of a task."""
    config = get_config()
    gateway = get_gateway_client(config)
    with _get_db() as db:
        try:
            state = planning_mod.get_planning_state(db, gateway, task_id)
        except MissionControlError as e:
            _fail(e)
        finally:
            gateway.close()
        if json_output:
            click.echo(json.dumps(state, indent=2))
            return
        if not state["isStarted"]:
            click.echo("Planning not started.")
            return
        for m in state["messages"]:
            click.echo(f"[{m['role']}] {m['content']}")
        _echo_planning(state)


# ── Webhook Commands ─────────────────────────────────────────────────────────


@main.group("webhook")
def webhook_group():
    """Completion webhook helpers."""
    pass


@webhook_group.command("sign")
@click.argument("body")
@click.option("--secret", default=None, help="Shared secret (defaults to WEBHOOK_SECRET)")
def webhook_sign(body, secret):
    """Print the signature header value for a webhook BODY."""
    secret = secret or get_config().webhook_secret
    if not secret:
        click.echo("No secret given and WEBHOOK_SECRET is not set.", err=True)
        sys.exit(1)
    signature = completion_mod.compute_signature(secret, body.encode())
    click.echo(f"{completion_mod.SIGNATURE_HEADER}: {signature}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API."""
    from mission_control.web.app import run_server

    click.echo(f"Starting mission control at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from mission_control.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
