"""Dispatch tasks into their assigned agent's gateway session."""

import logging
import sqlite3
import time
from dataclasses import dataclass, field

from mission_control.core.activity import log_activity, log_event
from mission_control.core.agents import find_other_orchestrators, get_agent, set_agent_status
from mission_control.core.errors import AgentNotFound, DispatchFailed, NoAssignedAgent
from mission_control.core.sessions import ensure_connected, get_or_create_session, session_key
from mission_control.core.tasks import advance_task_status, require_task, slugify
from mission_control.db.models import Agent, AgentSession, Task
from mission_control.integrations.gateway import GatewayError

logger = logging.getLogger(__name__)

PRIORITY_MARKERS = {
    "low": "🔵",
    "normal": "⚪",
    "high": "🟡",
    "urgent": "🔴",
}

WEBHOOK_PATH = "/api/webhooks/agent-completion"


@dataclass
class DispatchOutcome:
    """Result of a dispatch attempt.

    ``dispatched`` is False only for the orchestrator conflict, where nothing was
    sent and ``other_orchestrators`` lists the alternatives.
    """

    dispatched: bool
    task: Task
    agent: Agent
    session: AgentSession | None = None
    warning: str | None = None
    other_orchestrators: list[Agent] = field(default_factory=list)


def task_output_dir(projects_path: str, task: Task) -> str:
    return f"{projects_path}/{slugify(task.title)}"


def build_dispatch_message(
    task: Task,
    projects_path: str,
    base_url: str,
    api_token: str | None = None,
) -> str:
    """Render the instructions an agent receives for a task."""
    marker = PRIORITY_MARKERS.get(task.priority, PRIORITY_MARKERS["normal"])
    output_dir = task_output_dir(projects_path, task)
    auth_line = f"\nInclude header: Authorization: Bearer {api_token}" if api_token else ""

    parts = [f"{marker} **NEW TASK ASSIGNED**", ""]
    parts.append(f"**Title:** {task.title}")
    if task.description:
        parts.append(f"**Description:** {task.description}")
    parts.append("")
    parts.append(f"**Priority:** {task.priority.upper()}")
    if task.due_date:
        parts.append(f"**Due:** {task.due_date}")
    parts.append(f"**Task ID:** {task.id}")
    parts.append("")
    parts.append(f"**OUTPUT DIRECTORY:** {output_dir}")
    parts.append("Create this directory and save all deliverables there.")
    parts.append("")
    parts.append("**WHEN COMPLETE**, make ONE API call to report results:")
    parts.append(f"POST {base_url}{WEBHOOK_PATH}")
    parts.append(f"Content-Type: application/json{auth_line}")
    parts.append("")
    parts.append(
        "{\n"
        f'  "task_id": "{task.id}",\n'
        '  "status": "review",\n'
        '  "summary": "Brief description of what you did",\n'
        '  "deliverables": [\n'
        f'    {{"type": "file", "title": "filename.ext", "path": "{output_dir}/filename.ext"}}\n'
        "  ]\n"
        "}"
    )
    parts.append("")
    parts.append("If you need help or clarification, ask the orchestrator.")
    return "\n".join(parts)


def dispatch_task(db: sqlite3.Connection, gateway, config, task_id: str) -> DispatchOutcome:
    """Send a task to its assigned agent and mark it in progress.

    Local state changes only after the gateway accepted the message. A session
    created along the way stays committed if the send fails; the retry reuses it.
    """
    task = require_task(db, task_id)
    if not task.assigned_agent_id:
        raise NoAssignedAgent("Task has no assigned agent")

    agent = get_agent(db, task.assigned_agent_id)
    if not agent:
        raise AgentNotFound("Assigned agent not found")

    if agent.is_master:
        others = find_other_orchestrators(db, agent, task.workspace_id)
        if others:
            count = len(others)
            names = ", ".join(o.name for o in others)
            warning = (
                f"There {'is' if count == 1 else 'are'} {count} other "
                f"orchestrator{'' if count == 1 else 's'} available in this workspace: "
                f"{names}. Consider assigning this task to them instead."
            )
            logger.info("Dispatch of task %s held: %s", task.id, warning)
            return DispatchOutcome(
                dispatched=False,
                task=task,
                agent=agent,
                warning=warning,
                other_orchestrators=others,
            )

    ensure_connected(gateway)
    session, _ = get_or_create_session(db, agent)

    message = build_dispatch_message(
        task, config.projects_path, config.base_url, config.api_token
    )
    try:
        gateway.call("chat.send", {
            "sessionKey": session_key(session),
            "message": message,
            "idempotencyKey": f"dispatch-{task.id}-{int(time.time() * 1000)}",
        })
    except GatewayError as e:
        logger.error("Failed to send task %s to %s: %s", task.id, agent.name, e)
        raise DispatchFailed("Failed to send task to agent") from e

    advance_task_status(db, task.id, "in_progress")
    set_agent_status(db, agent.id, "working")
    log_event(
        db,
        "task_dispatched",
        f'Task "{task.title}" dispatched to {agent.name}',
        agent_id=agent.id,
        task_id=task.id,
    )
    log_activity(
        db,
        task.id,
        "status_changed",
        f"Task dispatched to {agent.name} - Agent is now working on this task",
        agent_id=agent.id,
    )
    db.commit()
    logger.info("Dispatched task %s to %s (%s)", task.id, agent.name, session.external_session_id)

    return DispatchOutcome(
        dispatched=True,
        task=require_task(db, task.id),
        agent=get_agent(db, agent.id),
        session=session,
    )
