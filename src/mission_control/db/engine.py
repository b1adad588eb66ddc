"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

# Millisecond-precision UTC timestamp, ISO-8601 so datetime.fromisoformat can read it back.
NOW = "strftime('%Y-%m-%dT%H:%M:%f', 'now')"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT DEFAULT ({NOW}),
    updated_at TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    role TEXT DEFAULT '',
    is_master INTEGER DEFAULT 0,
    status TEXT DEFAULT 'standby' CHECK (status IN ('standby', 'working', 'offline')),
    workspace_id TEXT NOT NULL DEFAULT 'default' REFERENCES workspaces(id),
    created_at TEXT DEFAULT ({NOW}),
    updated_at TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT DEFAULT 'inbox' CHECK (status IN (
        'planning', 'inbox', 'assigned', 'in_progress', 'testing', 'review', 'done'
    )),
    priority TEXT DEFAULT 'normal' CHECK (priority IN ('low', 'normal', 'high', 'urgent')),
    assigned_agent_id TEXT REFERENCES agents(id),
    workspace_id TEXT NOT NULL DEFAULT 'default' REFERENCES workspaces(id),
    due_date TEXT,
    planning_session_key TEXT,
    planning_messages TEXT,
    planning_complete INTEGER DEFAULT 0,
    planning_spec TEXT,
    planning_agents TEXT,
    created_at TEXT DEFAULT ({NOW}),
    updated_at TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS agent_sessions (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL REFERENCES agents(id),
    external_session_id TEXT NOT NULL,
    channel TEXT DEFAULT 'mission-control',
    status TEXT DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
    created_at TEXT DEFAULT ({NOW}),
    updated_at TEXT DEFAULT ({NOW})
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_agent_sessions_one_active
    ON agent_sessions(agent_id) WHERE status = 'active';

CREATE TABLE IF NOT EXISTS task_deliverables (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    deliverable_type TEXT NOT NULL CHECK (deliverable_type IN ('file', 'url', 'artifact')),
    title TEXT NOT NULL,
    path TEXT,
    description TEXT,
    created_at TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS task_activities (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    agent_id TEXT REFERENCES agents(id),
    activity_type TEXT NOT NULL CHECK (activity_type IN (
        'spawned', 'updated', 'completed', 'file_created', 'status_changed'
    )),
    message TEXT NOT NULL,
    created_at TEXT DEFAULT ({NOW})
);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    agent_id TEXT REFERENCES agents(id),
    task_id TEXT REFERENCES tasks(id) ON DELETE CASCADE,
    message TEXT NOT NULL,
    created_at TEXT DEFAULT ({NOW})
);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE tasks ADD COLUMN due_date TEXT",
        "ALTER TABLE tasks ADD COLUMN planning_agents TEXT",
        "ALTER TABLE agents ADD COLUMN role TEXT DEFAULT ''",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists

    conn.execute(
        "INSERT OR IGNORE INTO workspaces (id, name) VALUES ('default', 'Default Workspace')"
    )
    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
