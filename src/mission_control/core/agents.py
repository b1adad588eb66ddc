"""Agent management operations."""

import sqlite3
import uuid
from datetime import datetime

from mission_control.core.activity import log_event
from mission_control.core.errors import AgentNotFound, ValidationError
from mission_control.db.engine import NOW
from mission_control.db.models import Agent

AGENT_STATUSES = ("standby", "working", "offline")


def create_agent(
    db: sqlite3.Connection,
    name: str,
    workspace_id: str = "default",
    is_master: bool = False,
    role: str = "",
    status: str = "standby",
) -> Agent:
    """Register a new agent."""
    if not name or not name.strip():
        raise ValidationError("Agent name is required")
    if status not in AGENT_STATUSES:
        raise ValidationError(f"Agent status must be one of: {', '.join(AGENT_STATUSES)}")

    agent_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO agents (id, name, role, is_master, status, workspace_id)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (agent_id, name, role, 1 if is_master else 0, status, workspace_id),
    )
    log_event(db, "agent_joined", f"{name} joined the team", agent_id=agent_id)
    db.commit()
    return get_agent(db, agent_id)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    """Get an agent by ID."""
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def require_agent(db: sqlite3.Connection, agent_id: str) -> Agent:
    agent = get_agent(db, agent_id)
    if not agent:
        raise AgentNotFound("Agent not found", {"agent_id": agent_id})
    return agent


def list_agents(
    db: sqlite3.Connection,
    workspace_id: str | None = None,
    status: str | None = None,
) -> list[Agent]:
    """List agents, optionally filtered by workspace and status."""
    query = "SELECT * FROM agents WHERE 1=1"
    params: list = []
    if workspace_id:
        query += " AND workspace_id = ?"
        params.append(workspace_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY is_master DESC, name"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent(r) for r in rows]


def set_agent_status(db: sqlite3.Connection, agent_id: str, status: str) -> None:
    """Set an agent's status. The caller commits."""
    if status not in AGENT_STATUSES:
        raise ValidationError(f"Agent status must be one of: {', '.join(AGENT_STATUSES)}")
    db.execute(
        f"UPDATE agents SET status = ?, updated_at = {NOW} WHERE id = ?",
        (status, agent_id),
    )


def find_other_orchestrators(
    db: sqlite3.Connection,
    agent: Agent,
    workspace_id: str,
) -> list[Agent]:
    """Master agents in the workspace other than ``agent`` that are not offline."""
    rows = db.execute(
        """SELECT * FROM agents
           WHERE is_master = 1
             AND id != ?
             AND workspace_id = ?
             AND status != 'offline'
           ORDER BY name""",
        (agent.id, workspace_id),
    ).fetchall()
    return [_row_to_agent(r) for r in rows]


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        role=row["role"] or "",
        is_master=bool(row["is_master"]),
        status=row["status"],
        workspace_id=row["workspace_id"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
