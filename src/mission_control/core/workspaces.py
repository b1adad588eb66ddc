"""Workspace management operations."""

import sqlite3
from datetime import datetime

from mission_control.db.models import Workspace


def create_workspace(db: sqlite3.Connection, workspace_id: str, name: str) -> Workspace:
    """Create a new workspace."""
    db.execute(
        "INSERT INTO workspaces (id, name) VALUES (?, ?)",
        (workspace_id, name),
    )
    db.commit()
    return get_workspace(db, workspace_id)


def get_workspace(db: sqlite3.Connection, workspace_id: str) -> Workspace | None:
    """Get a workspace by ID."""
    row = db.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    if not row:
        return None
    return _row_to_workspace(row)


def list_workspaces(db: sqlite3.Connection) -> list[Workspace]:
    """List all workspaces."""
    rows = db.execute("SELECT * FROM workspaces ORDER BY created_at, rowid").fetchall()
    return [_row_to_workspace(r) for r in rows]


def ensure_workspace(db: sqlite3.Connection, workspace_id: str) -> Workspace:
    """Ensure a workspace exists, creating it with its ID as name if needed."""
    workspace = get_workspace(db, workspace_id)
    if not workspace:
        workspace = create_workspace(db, workspace_id, workspace_id)
    return workspace


def _row_to_workspace(row: sqlite3.Row) -> Workspace:
    return Workspace(
        id=row["id"],
        name=row["name"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
