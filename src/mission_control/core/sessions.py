"""Agent to gateway session registry.

An agent has at most one active session. Creation is serialized per agent in
process, and the partial unique index on ``agent_sessions`` rejects a second
active row from any other writer. Sessions are deactivated, never deleted.
"""

import logging
import sqlite3
import threading
import uuid
from datetime import datetime

from mission_control.core.activity import log_event
from mission_control.core.agents import require_agent
from mission_control.core.errors import AlreadyLinked, GatewayUnavailable, SessionNotFound
from mission_control.core.tasks import slugify
from mission_control.db.engine import NOW
from mission_control.db.models import Agent, AgentSession
from mission_control.integrations.gateway import GatewayError

logger = logging.getLogger(__name__)

SESSION_ID_PREFIX = "mission-control-"
SESSION_KEY_PREFIX = "agent:main:"
DEFAULT_CHANNEL = "mission-control"

_agent_locks: dict[str, threading.Lock] = {}
_agent_locks_guard = threading.Lock()


def _lock_for(agent_id: str) -> threading.Lock:
    with _agent_locks_guard:
        return _agent_locks.setdefault(agent_id, threading.Lock())


def external_session_id_for(agent_name: str) -> str:
    return f"{SESSION_ID_PREFIX}{slugify(agent_name)}"


def session_key(session: AgentSession) -> str:
    """Gateway routing key for a session."""
    return f"{SESSION_KEY_PREFIX}{session.external_session_id}"


def ensure_connected(gateway) -> None:
    """Connect the gateway client unless it already is."""
    if gateway.is_connected():
        return
    try:
        gateway.connect()
    except GatewayError as e:
        logger.error("Failed to connect to gateway: %s", e)
        raise GatewayUnavailable("Failed to connect to agent gateway") from e


def get_active_session(db: sqlite3.Connection, agent_id: str) -> AgentSession | None:
    row = db.execute(
        "SELECT * FROM agent_sessions WHERE agent_id = ? AND status = 'active'",
        (agent_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def get_active_session_by_external_id(
    db: sqlite3.Connection, external_session_id: str
) -> AgentSession | None:
    row = db.execute(
        "SELECT * FROM agent_sessions WHERE external_session_id = ? AND status = 'active'",
        (external_session_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def get_session(db: sqlite3.Connection, session_id: str) -> AgentSession | None:
    row = db.execute("SELECT * FROM agent_sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def create_session(
    db: sqlite3.Connection,
    agent: Agent,
    external_session_id: str | None = None,
    channel: str = DEFAULT_CHANNEL,
    event_message: str | None = None,
) -> AgentSession:
    """Create the agent's active session; raises ``AlreadyLinked`` if one exists."""
    with _lock_for(agent.id):
        return _create_session_locked(db, agent, external_session_id, channel, event_message)


def get_or_create_session(db: sqlite3.Connection, agent: Agent) -> tuple[AgentSession, bool]:
    """Return the agent's active session, creating it if needed, and whether it is new."""
    with _lock_for(agent.id):
        existing = get_active_session(db, agent.id)
        if existing:
            return existing, False
        session = _create_session_locked(
            db, agent, None, DEFAULT_CHANNEL, f"{agent.name} session created"
        )
        return session, True


def _create_session_locked(
    db: sqlite3.Connection,
    agent: Agent,
    external_session_id: str | None,
    channel: str,
    event_message: str | None,
) -> AgentSession:
    existing = get_active_session(db, agent.id)
    if existing:
        raise AlreadyLinked(
            "Agent is already linked to a gateway session",
            {"session": session_dict(existing)},
        )

    session_id = str(uuid.uuid4())
    external_id = external_session_id or external_session_id_for(agent.name)
    try:
        db.execute(
            """INSERT INTO agent_sessions (id, agent_id, external_session_id, channel, status)
               VALUES (?, ?, ?, ?, 'active')""",
            (session_id, agent.id, external_id, channel),
        )
    except sqlite3.IntegrityError as e:
        db.rollback()
        current = get_active_session(db, agent.id)
        raise AlreadyLinked(
            "Agent is already linked to a gateway session",
            {"session": session_dict(current) if current else None},
        ) from e
    log_event(
        db,
        "agent_status_changed",
        event_message or f"{agent.name} connected to agent gateway",
        agent_id=agent.id,
    )
    db.commit()
    logger.info("Created session %s for agent %s", external_id, agent.name)
    return get_session(db, session_id)


def deactivate_session(db: sqlite3.Connection, session: AgentSession, agent_name: str) -> None:
    db.execute(
        f"UPDATE agent_sessions SET status = 'inactive', updated_at = {NOW} WHERE id = ?",
        (session.id,),
    )
    log_event(
        db,
        "agent_status_changed",
        f"{agent_name} disconnected from agent gateway",
        agent_id=session.agent_id,
    )
    db.commit()
    logger.info("Deactivated session %s", session.external_session_id)


def link_agent(
    db: sqlite3.Connection,
    gateway,
    agent_id: str,
    external_session_id: str | None = None,
) -> AgentSession:
    """Link an agent to the gateway by recording an active session for it."""
    agent = require_agent(db, agent_id)

    existing = get_active_session(db, agent.id)
    if existing:
        raise AlreadyLinked(
            "Agent is already linked to a gateway session",
            {"session": session_dict(existing)},
        )

    ensure_connected(gateway)
    # The gateway creates sessions lazily on first message; listing proves it answers.
    try:
        gateway.list_sessions()
    except GatewayError as e:
        raise GatewayUnavailable(
            "Connected but failed to communicate with agent gateway"
        ) from e

    return create_session(db, agent, external_session_id)


def unlink_agent(db: sqlite3.Connection, agent_id: str) -> AgentSession:
    """Deactivate the agent's active session."""
    agent = require_agent(db, agent_id)
    session = get_active_session(db, agent.id)
    if not session:
        raise SessionNotFound("Agent is not linked to a gateway session")
    deactivate_session(db, session, agent.name)
    return get_session(db, session.id)


def session_dict(s: AgentSession) -> dict:
    return {
        "id": s.id,
        "agent_id": s.agent_id,
        "external_session_id": s.external_session_id,
        "channel": s.channel,
        "status": s.status,
        "created_at": s.created_at.isoformat() if s.created_at else None,
        "updated_at": s.updated_at.isoformat() if s.updated_at else None,
    }


def _row_to_session(row: sqlite3.Row) -> AgentSession:
    return AgentSession(
        id=row["id"],
        agent_id=row["agent_id"],
        external_session_id=row["external_session_id"],
        channel=row["channel"],
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
