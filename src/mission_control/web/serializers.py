"""JSON-ready dict conversions shared by the HTTP, MCP and CLI surfaces."""

from mission_control.core.sessions import session_dict  # noqa: F401 - re-exported


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "assigned_agent_id": t.assigned_agent_id,
        "workspace_id": t.workspace_id,
        "due_date": t.due_date,
        "planning_session_key": t.planning_session_key,
        "planning_complete": t.planning_complete,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def agent_dict(a) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "role": a.role,
        "is_master": a.is_master,
        "status": a.status,
        "workspace_id": a.workspace_id,
        "created_at": _iso(a.created_at),
        "updated_at": _iso(a.updated_at),
    }


def orchestrator_dict(a) -> dict:
    return {"id": a.id, "name": a.name, "role": a.role}


def activity_dict(a) -> dict:
    return {
        "id": a.id,
        "agent_id": a.agent_id,
        "activity_type": a.activity_type,
        "message": a.message,
        "created_at": _iso(a.created_at),
    }


def deliverable_dict(d) -> dict:
    return {
        "id": d.id,
        "deliverable_type": d.deliverable_type,
        "title": d.title,
        "path": d.path,
        "description": d.description,
        "created_at": _iso(d.created_at),
    }
