"""Task management operations."""

import json
import logging
import re
import sqlite3
import uuid
from datetime import datetime

from mission_control.core.activity import log_activity
from mission_control.core.errors import AgentNotFound, TaskNotFound, ValidationError
from mission_control.core.status import TASK_PRIORITIES, Transition, advance
from mission_control.db.engine import NOW
from mission_control.db.models import PlanningMessage, Task

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 10000


def slugify(text: str) -> str:
    """Convert text to a lowercase, filesystem-safe slug."""
    slug = text.lower().strip()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    return slug.strip("-")[:60]


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str | None = None,
    priority: str = "normal",
    assigned_agent_id: str | None = None,
    workspace_id: str = "default",
    due_date: str | None = None,
) -> Task:
    """Create a new task in ``inbox``, or ``assigned`` when an agent is given."""
    if not title or not title.strip():
        raise ValidationError("Title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be {MAX_TITLE_LENGTH} characters or less")
    if description and len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less"
        )
    if priority not in TASK_PRIORITIES:
        raise ValidationError(f"Priority must be one of: {', '.join(TASK_PRIORITIES)}")
    if assigned_agent_id and not _agent_exists(db, assigned_agent_id):
        raise AgentNotFound(f"Agent not found: {assigned_agent_id}")

    task_id = str(uuid.uuid4())
    status = "assigned" if assigned_agent_id else "inbox"
    db.execute(
        """INSERT INTO tasks
           (id, title, description, status, priority, assigned_agent_id, workspace_id, due_date)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (task_id, title, description, status, priority, assigned_agent_id, workspace_id, due_date),
    )
    log_activity(db, task_id, "spawned", f"Task created: {title}", assigned_agent_id)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise TaskNotFound("Task not found", {"task_id": task_id})
    return task


def list_tasks(
    db: sqlite3.Connection,
    workspace_id: str | None = None,
    status: str | None = None,
    assigned_agent_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, most recently updated first."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if workspace_id:
        query += " AND workspace_id = ?"
        params.append(workspace_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    if assigned_agent_id:
        query += " AND assigned_agent_id = ?"
        params.append(assigned_agent_id)

    query += " ORDER BY updated_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def advance_task_status(
    db: sqlite3.Connection,
    task_id: str,
    requested: str,
) -> Transition:
    """Move a task forward to ``requested``; a no-op if it is already there or later.

    The write is a compare-and-set on the status that was read, so a concurrent
    writer cannot be overwritten with an earlier status. The caller commits.
    """
    for _ in range(3):
        task = require_task(db, task_id)
        transition = advance(task.status, requested)
        if not transition.applied:
            return transition
        cursor = db.execute(
            f"UPDATE tasks SET status = ?, updated_at = {NOW} WHERE id = ? AND status = ?",
            (transition.status, task_id, transition.previous),
        )
        if cursor.rowcount == 1:
            logger.info(
                "Task %s status %s -> %s", task_id, transition.previous, transition.status
            )
            return transition
    # Lost the race repeatedly; report whatever the task holds now.
    current = require_task(db, task_id).status
    return Transition(applied=False, previous=current, status=current)


def assign_task(db: sqlite3.Connection, task_id: str, agent_id: str) -> Task:
    """Assign a task to an agent and move it forward to ``assigned``."""
    task = require_task(db, task_id)
    agent_row = db.execute("SELECT name FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not agent_row:
        raise AgentNotFound(f"Agent not found: {agent_id}")

    db.execute(
        f"UPDATE tasks SET assigned_agent_id = ?, updated_at = {NOW} WHERE id = ?",
        (agent_id, task.id),
    )
    advance_task_status(db, task.id, "assigned")
    log_activity(db, task.id, "updated", f"Assigned to {agent_row['name']}", agent_id)
    db.commit()
    return get_task(db, task.id)


def find_latest_active_task(db: sqlite3.Connection, agent_id: str) -> Task | None:
    """The agent's most recently updated task that is ``assigned`` or ``in_progress``."""
    row = db.execute(
        """SELECT * FROM tasks
           WHERE assigned_agent_id = ? AND status IN ('assigned', 'in_progress')
           ORDER BY updated_at DESC, created_at DESC, rowid DESC
           LIMIT 1""",
        (agent_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def update_planning_fields(db: sqlite3.Connection, task_id: str, **kwargs) -> None:
    """Write planning columns. Lists and dicts are stored as JSON. The caller commits."""
    allowed = {
        "planning_session_key",
        "planning_messages",
        "planning_complete",
        "planning_spec",
        "planning_agents",
    }
    updates = {}
    for key, value in kwargs.items():
        if key not in allowed:
            raise ValueError(f"Not a planning field: {key}")
        if key == "planning_messages":
            value = json.dumps([_message_dict(m) for m in value])
        elif key in ("planning_spec", "planning_agents") and value is not None:
            value = json.dumps(value)
        elif key == "planning_complete":
            value = 1 if value else 0
        updates[key] = value
    if not updates:
        return

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE tasks SET {set_clause}, updated_at = {NOW} WHERE id = ?",
        list(updates.values()) + [task_id],
    )


def append_planning_message(
    db: sqlite3.Connection,
    task_id: str,
    messages: list[PlanningMessage],
    message: PlanningMessage,
) -> bool:
    """Append ``message`` to the planning log that was read as ``messages``.

    Compare-and-set on the stored log length: returns False, writing nothing,
    when another writer extended the log first. The caller commits.
    """
    cur = db.execute(
        f"""UPDATE tasks SET planning_messages = ?, updated_at = {NOW}
            WHERE id = ? AND COALESCE(json_array_length(planning_messages), 0) = ?""",
        (json.dumps([_message_dict(m) for m in messages + [message]]), task_id, len(messages)),
    )
    return cur.rowcount == 1


def _agent_exists(db: sqlite3.Connection, agent_id: str) -> bool:
    return db.execute("SELECT 1 FROM agents WHERE id = ?", (agent_id,)).fetchone() is not None


def _message_dict(m) -> dict:
    if isinstance(m, PlanningMessage):
        return {"role": m.role, "content": m.content, "timestamp": m.timestamp}
    return dict(m)


def _load_json(val: str | None):
    if not val:
        return None
    try:
        return json.loads(val)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column value: %r", val[:80])
        return None


def _row_to_task(row: sqlite3.Row) -> Task:
    messages = _load_json(row["planning_messages"]) or []
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"] or "normal",
        assigned_agent_id=row["assigned_agent_id"],
        workspace_id=row["workspace_id"],
        due_date=row["due_date"],
        planning_session_key=row["planning_session_key"],
        planning_messages=[
            PlanningMessage(
                role=m.get("role", ""),
                content=m.get("content", ""),
                timestamp=m.get("timestamp", 0),
            )
            for m in messages
            if isinstance(m, dict)
        ],
        planning_complete=bool(row["planning_complete"]),
        planning_spec=_load_json(row["planning_spec"]),
        planning_agents=_load_json(row["planning_agents"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
