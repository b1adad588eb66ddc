"""Data models for mission control."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Workspace:
    id: str
    name: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Agent:
    id: str
    name: str
    role: str = ""
    is_master: bool = False
    status: str = "standby"
    workspace_id: str = "default"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PlanningMessage:
    role: str
    content: str
    timestamp: int = 0


@dataclass
class Task:
    id: str
    title: str
    description: str | None = None
    status: str = "inbox"
    priority: str = "normal"
    assigned_agent_id: str | None = None
    workspace_id: str = "default"
    due_date: str | None = None
    planning_session_key: str | None = None
    planning_messages: list[PlanningMessage] = field(default_factory=list)
    planning_complete: bool = False
    planning_spec: dict | list | None = None
    planning_agents: dict | list | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class AgentSession:
    id: str
    agent_id: str
    external_session_id: str
    channel: str = "mission-control"
    status: str = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Deliverable:
    id: str
    task_id: str
    deliverable_type: str = "file"
    title: str = ""
    path: str | None = None
    description: str | None = None
    created_at: datetime | None = None


@dataclass
class TaskActivity:
    id: str
    task_id: str
    agent_id: str | None = None
    activity_type: str = "updated"
    message: str = ""
    created_at: datetime | None = None


@dataclass
class Event:
    id: str
    type: str
    agent_id: str | None = None
    task_id: str | None = None
    message: str = ""
    created_at: datetime | None = None
