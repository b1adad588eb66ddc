"""Inbound completion callbacks from agents.

Two payload shapes are accepted:

* direct: ``{"task_id", "status"?, "summary"?, "deliverables"?}``
* legacy: ``{"session_id", "message"}`` where the message carries
  ``TASK_COMPLETE: <summary>``

Status changes go through the forward-only transition, so replays and stale
retries never move a task backwards. Deliverables, activities and events are
appended on every delivery.
"""

import hashlib
import hmac
import json
import logging
import re
import sqlite3

from mission_control.core.activity import (
    add_deliverable,
    log_activity,
    log_event,
    validate_deliverables,
)
from mission_control.core.agents import get_agent, set_agent_status
from mission_control.core.errors import (
    InvalidFormat,
    InvalidPayload,
    NoActiveTask,
    SessionNotFound,
    Unauthorized,
)
from mission_control.core.sessions import get_active_session_by_external_id
from mission_control.core.status import COMPLETION_STATUSES
from mission_control.core.tasks import (
    advance_task_status,
    find_latest_active_task,
    require_task,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"
COMPLETION_MARKER = re.compile(r"TASK_COMPLETE:\s*(.+)", re.IGNORECASE)
DEFAULT_SUMMARY = "Task finished"


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA-256 of the exact request body."""
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str | None, raw_body: bytes, signature: str | None) -> None:
    """Reject the request unless it is signed with ``secret``.

    With no secret configured verification is skipped entirely.
    """
    if not secret:
        return
    expected = compute_signature(secret, raw_body).encode()
    if not signature or not hmac.compare_digest(
        signature.strip().lower().encode("utf-8"), expected
    ):
        logger.warning("Rejected completion webhook with invalid signature")
        raise Unauthorized("Unauthorized")


def parse_payload(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body or b"")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidPayload("Request body must be valid JSON") from e
    if not isinstance(payload, dict):
        raise InvalidPayload("Request body must be a JSON object")
    return payload


def process_webhook(
    db: sqlite3.Connection,
    raw_body: bytes,
    signature: str | None,
    secret: str | None,
) -> dict:
    """Authenticate, parse and apply one completion callback."""
    verify_signature(secret, raw_body, signature)
    return handle_completion(db, parse_payload(raw_body))


def handle_completion(db: sqlite3.Connection, payload: dict) -> dict:
    if payload.get("task_id"):
        return complete_task(
            db,
            str(payload["task_id"]),
            status=payload.get("status"),
            summary=payload.get("summary"),
            deliverables=payload.get("deliverables"),
        )

    if payload.get("session_id") and payload.get("message"):
        return complete_from_session(db, str(payload["session_id"]), payload["message"])

    raise InvalidPayload("Invalid payload. Provide either task_id or session_id + message")


def complete_task(
    db: sqlite3.Connection,
    task_id: str,
    status: str | None = None,
    summary: str | None = None,
    deliverables: list | None = None,
) -> dict:
    """Direct completion: move the task forward, record deliverables, free the agent."""
    items = validate_deliverables(deliverables)
    task = require_task(db, task_id)

    target = status if status in COMPLETION_STATUSES else "testing"
    summary = summary if isinstance(summary, str) and summary.strip() else DEFAULT_SUMMARY

    transition = advance_task_status(db, task.id, target)

    for d in items:
        add_deliverable(db, task.id, d["title"], d["type"], d["path"], d["description"])

    agent = get_agent(db, task.assigned_agent_id) if task.assigned_agent_id else None
    log_activity(db, task.id, "completed", summary, agent_id=task.assigned_agent_id)
    log_event(
        db,
        "task_completed",
        f"{agent.name if agent else 'Agent'} completed: {summary}",
        agent_id=task.assigned_agent_id,
        task_id=task.id,
    )
    if agent:
        set_agent_status(db, agent.id, "standby")
    db.commit()

    logger.info(
        "Completion for task %s: requested %s, now %s (%d deliverables)",
        task.id, target, transition.status, len(items),
    )
    return {
        "success": True,
        "task_id": task.id,
        "new_status": transition.status,
        "status_changed": transition.applied,
        "deliverables_registered": len(items),
        "message": f"Task moved to {transition.status}",
    }


def complete_from_session(db: sqlite3.Connection, external_session_id: str, message) -> dict:
    """Legacy completion: infer the task from the sending session's agent."""
    match = COMPLETION_MARKER.search(message) if isinstance(message, str) else None
    if not match:
        raise InvalidFormat(
            "Invalid completion message format. Expected: TASK_COMPLETE: [summary]"
        )
    summary = match.group(1).strip()

    session = get_active_session_by_external_id(db, external_session_id)
    if not session:
        raise SessionNotFound("Session not found or inactive")

    task = find_latest_active_task(db, session.agent_id)
    if not task:
        raise NoActiveTask("No active task found for this agent")

    transition = advance_task_status(db, task.id, "testing")

    agent = get_agent(db, session.agent_id)
    log_event(
        db,
        "task_completed",
        f"{agent.name if agent else 'Agent'} completed: {summary}",
        agent_id=session.agent_id,
        task_id=task.id,
    )
    set_agent_status(db, session.agent_id, "standby")
    db.commit()

    logger.info("Session completion for task %s via %s", task.id, external_session_id)
    return {
        "success": True,
        "task_id": task.id,
        "agent_id": session.agent_id,
        "summary": summary,
        "new_status": transition.status,
        "message": f"Task moved to {transition.status} for automated verification",
    }
