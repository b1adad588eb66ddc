"""Append-only audit trail: task activities, system events and deliverables."""

import sqlite3
import uuid
from datetime import datetime

from mission_control.core.errors import ValidationError
from mission_control.db.models import Deliverable, Event, TaskActivity

ACTIVITY_TYPES = ("spawned", "updated", "completed", "file_created", "status_changed")
DELIVERABLE_TYPES = ("file", "url", "artifact")


def log_activity(
    db: sqlite3.Connection,
    task_id: str,
    activity_type: str,
    message: str,
    agent_id: str | None = None,
) -> str:
    """Insert a task activity row. The caller commits."""
    if activity_type not in ACTIVITY_TYPES:
        raise ValidationError(f"Invalid activity type: {activity_type}")
    activity_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO task_activities (id, task_id, agent_id, activity_type, message)
           VALUES (?, ?, ?, ?, ?)""",
        (activity_id, task_id, agent_id, activity_type, message),
    )
    return activity_id


def log_event(
    db: sqlite3.Connection,
    event_type: str,
    message: str,
    agent_id: str | None = None,
    task_id: str | None = None,
) -> str:
    """Insert a system event row. The caller commits."""
    event_id = str(uuid.uuid4())
    db.execute(
        "INSERT INTO events (id, type, agent_id, task_id, message) VALUES (?, ?, ?, ?, ?)",
        (event_id, event_type, agent_id, task_id, message),
    )
    return event_id


def add_deliverable(
    db: sqlite3.Connection,
    task_id: str,
    title: str,
    deliverable_type: str = "file",
    path: str | None = None,
    description: str | None = None,
) -> str:
    """Insert a deliverable row. No deduplication; the caller commits."""
    deliverable_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO task_deliverables
           (id, task_id, deliverable_type, title, path, description)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (deliverable_id, task_id, deliverable_type, title, path, description),
    )
    return deliverable_id


def get_task_activities(db: sqlite3.Connection, task_id: str) -> list[TaskActivity]:
    """Get the activity log for a task, oldest first."""
    rows = db.execute(
        "SELECT * FROM task_activities WHERE task_id = ? ORDER BY created_at, rowid",
        (task_id,),
    ).fetchall()
    return [
        TaskActivity(
            id=r["id"],
            task_id=r["task_id"],
            agent_id=r["agent_id"],
            activity_type=r["activity_type"],
            message=r["message"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def get_task_deliverables(db: sqlite3.Connection, task_id: str) -> list[Deliverable]:
    """Get the deliverables registered for a task, oldest first."""
    rows = db.execute(
        "SELECT * FROM task_deliverables WHERE task_id = ? ORDER BY created_at, rowid",
        (task_id,),
    ).fetchall()
    return [
        Deliverable(
            id=r["id"],
            task_id=r["task_id"],
            deliverable_type=r["deliverable_type"],
            title=r["title"],
            path=r["path"],
            description=r["description"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def list_events(
    db: sqlite3.Connection,
    event_type: str | None = None,
    task_id: str | None = None,
    agent_id: str | None = None,
    limit: int | None = None,
) -> list[Event]:
    """List events, newest first, with optional filters."""
    query = "SELECT * FROM events WHERE 1=1"
    params: list = []
    if event_type:
        query += " AND type = ?"
        params.append(event_type)
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if agent_id:
        query += " AND agent_id = ?"
        params.append(agent_id)
    query += " ORDER BY created_at DESC, rowid DESC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_event(r) for r in rows]


def recent_completions(db: sqlite3.Connection, limit: int = 10) -> list[dict]:
    """Newest ``task_completed`` events joined with agent name and task title."""
    rows = db.execute(
        """SELECT e.*, a.name AS agent_name, t.title AS task_title
           FROM events e
           LEFT JOIN agents a ON e.agent_id = a.id
           LEFT JOIN tasks t ON e.task_id = t.id
           WHERE e.type = 'task_completed'
           ORDER BY e.created_at DESC, e.rowid DESC
           LIMIT ?""",
        (limit,),
    ).fetchall()
    return [dict(r) for r in rows]


def validate_deliverables(raw) -> list[dict]:
    """Normalize a webhook ``deliverables`` list, rejecting it whole if any entry is bad."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("deliverables must be a list")

    normalized = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"deliverables[{i}] must be an object")
        title = item.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError(f"deliverables[{i}].title is required")
        d_type = item.get("type") or "file"
        if d_type not in DELIVERABLE_TYPES:
            raise ValidationError(
                f"deliverables[{i}].type must be one of: {', '.join(DELIVERABLE_TYPES)}"
            )
        normalized.append({
            "type": d_type,
            "title": title,
            "path": item.get("path") or None,
            "description": item.get("description") or None,
        })
    return normalized


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        type=row["type"],
        agent_id=row["agent_id"],
        task_id=row["task_id"],
        message=row["message"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
