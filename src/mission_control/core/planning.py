"""Planning question/answer exchange with an agent through the gateway.

The local ``planning_messages`` log is a cache of the gateway transcript. Replies
are picked up either by a bounded poll right after a message is sent, by a
``PlanningWatcher`` thread, or just in time when the planning state is read.
"""

import logging
import sqlite3
import threading
import time
from pathlib import Path

from mission_control.core.errors import (
    GatewayUnavailable,
    PlanningAlreadyStarted,
    ValidationError,
)
from mission_control.core.extract import extract_json
from mission_control.core.sessions import ensure_connected
from mission_control.core.status import status_index
from mission_control.core.tasks import (
    advance_task_status,
    append_planning_message,
    get_task,
    require_task,
    update_planning_fields,
)
from mission_control.db.engine import NOW
from mission_control.db.models import PlanningMessage, Task
from mission_control.integrations.gateway import GatewayError

logger = logging.getLogger(__name__)

PLANNING_SESSION_PREFIX = "agent:main:planning:"
HISTORY_LIMIT = 20
WAITING_NOTE = "Planning started, waiting for response. Poll GET endpoint for updates."


def planning_session_key(task_id: str) -> str:
    return f"{PLANNING_SESSION_PREFIX}{task_id}"


def build_planning_prompt(task: Task) -> str:
    return f"""PLANNING REQUEST

Task Title: {task.title}
Task Description: {task.description or 'No description provided'}

You are starting a planning session for this task. Read PLANNING.md for your protocol.

Generate your FIRST question to understand what the user needs. Remember:
- Questions must be multiple choice
- Include an "Other" option
- Be specific to THIS task, not generic

Respond with ONLY valid JSON in this format:
{{
  "question": "Your question here?",
  "options": [
    {{"id": "A", "label": "First option"}},
    {{"id": "B", "label": "Second option"}},
    {{"id": "C", "label": "Third option"}},
    {{"id": "other", "label": "Other"}}
  ]
}}"""


def build_answer_prompt(answer: str) -> str:
    return f"""PLANNING ANSWER

{answer}

Ask your next multiple-choice question in the same JSON format, including an "Other" option.
When you have enough information, respond with ONLY valid JSON in this format instead:
{{
  "status": "complete",
  "spec": {{"title": "...", "summary": "...", "deliverables": ["..."], "success_criteria": ["..."]}},
  "agents": [{{"name": "...", "role": "...", "instructions": "..."}}]
}}"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _message_text(msg: dict) -> str | None:
    content = msg.get("content")
    if isinstance(content, str):
        return content or None
    for block in content or []:
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
            return block["text"]
    return None


def fetch_latest_reply(gateway, key: str, limit: int = HISTORY_LIMIT) -> str | None:
    """Text of the newest assistant message after the last user turn in the transcript.

    None while the transcript still ends with the user's message. Only the
    position of the last user turn is used, so a history window holding just
    the tail of a long exchange is enough.
    """
    payload = gateway.call("chat.history", {"sessionKey": key, "limit": limit}) or {}
    reply = None
    for msg in payload.get("messages") or []:
        role = msg.get("role")
        if role == "user":
            reply = None
        elif role == "assistant":
            reply = _message_text(msg) or reply
    return reply


def poll_for_reply(gateway, key: str, attempts: int, interval: float) -> str | None:
    """Poll the transcript until the agent has answered the last user turn."""
    for attempt in range(attempts):
        time.sleep(interval)
        try:
            reply = fetch_latest_reply(gateway, key)
        except GatewayError as e:
            logger.warning("Planning poll %d for %s failed: %s", attempt + 1, key, e)
            continue
        if reply is not None:
            return reply
    return None


def current_question(messages: list[PlanningMessage]) -> dict | None:
    """The structured question in the latest assistant message, if it has one."""
    for m in reversed(messages):
        if m.role == "assistant":
            parsed = extract_json(m.content)
            if isinstance(parsed, dict) and "question" in parsed:
                return parsed
            return None
    return None


def record_reply(db: sqlite3.Connection, task_id: str, content: str, log_length: int):
    """Append an assistant reply to the local log and apply a completed plan.

    ``log_length`` is the length of the log when the reply was awaited. The
    reply is written only while the log is still that long and ends with the
    user's turn; otherwise a concurrent poll, read or watcher has moved the
    exchange on and nothing is written.

    Returns the parsed reply, or None when it carries no structured data.
    """
    parsed = extract_json(content)
    task = require_task(db, task_id)
    stored = task.planning_messages
    if not stored or len(stored) != log_length or stored[-1].role != "user":
        logger.debug("Planning log for task %s moved on, reply not recorded", task.id)
        return parsed
    reply = PlanningMessage(role="assistant", content=content, timestamp=_now_ms())
    if not append_planning_message(db, task.id, stored, reply):
        logger.debug("Planning reply for task %s recorded by another writer", task.id)
        return parsed

    if isinstance(parsed, dict) and parsed.get("status") == "complete":
        update_planning_fields(
            db,
            task.id,
            planning_complete=True,
            planning_spec=parsed.get("spec"),
            planning_agents=parsed.get("agents"),
        )
        advance_task_status(db, task.id, "inbox")
        logger.info("Planning complete for task %s", task.id)
    db.commit()
    return parsed


def _reply_result(key: str, task: Task, reply: str | None, parsed) -> dict:
    result = {
        "success": True,
        "sessionKey": key,
        "messages": [message_dict(m) for m in task.planning_messages],
        "isComplete": task.planning_complete,
    }
    if reply is None:
        result["note"] = WAITING_NOTE
    elif isinstance(parsed, dict) and "question" in parsed:
        result["currentQuestion"] = parsed
    elif task.planning_complete:
        result["spec"] = task.planning_spec
        result["agents"] = task.planning_agents
    else:
        result["rawResponse"] = reply
    return result


def _send(gateway, key: str, message: str, idempotency_key: str) -> None:
    try:
        gateway.call("chat.send", {
            "sessionKey": key,
            "message": message,
            "idempotencyKey": idempotency_key,
        })
    except GatewayError as e:
        logger.error("Failed to send planning message to %s: %s", key, e)
        raise GatewayUnavailable("Failed to send planning message to agent gateway") from e


def start_planning(
    db: sqlite3.Connection,
    gateway,
    task_id: str,
    attempts: int = 30,
    interval: float = 0.5,
    wait: bool = True,
) -> dict:
    """Open the planning session for a task and ask the agent for its first question.

    With ``wait`` the call blocks for at most ``attempts * interval`` seconds
    polling for the reply; running out of attempts is not an error, the result
    then carries a "still waiting" note.
    """
    task = require_task(db, task_id)
    if task.planning_session_key:
        raise PlanningAlreadyStarted(
            "Planning already started", {"sessionKey": task.planning_session_key}
        )
    if status_index(task.status) > status_index("assigned"):
        raise ValidationError(f"Cannot start planning for a task in {task.status}")

    key = planning_session_key(task.id)
    prompt = build_planning_prompt(task)

    ensure_connected(gateway)
    _send(gateway, key, prompt, f"planning-start-{task.id}-{_now_ms()}")

    messages = [PlanningMessage(role="user", content=prompt, timestamp=_now_ms())]
    update_planning_fields(db, task.id, planning_session_key=key, planning_messages=messages)
    db.execute(
        f"""UPDATE tasks SET status = 'planning', updated_at = {NOW}
            WHERE id = ? AND status IN ('planning', 'inbox', 'assigned')""",
        (task.id,),
    )
    db.commit()
    logger.info("Planning started for task %s (%s)", task.id, key)

    reply = poll_for_reply(gateway, key, attempts, interval) if wait else None
    parsed = record_reply(db, task.id, reply, 1) if reply is not None else None
    return _reply_result(key, require_task(db, task.id), reply, parsed)


def answer_planning(
    db: sqlite3.Connection,
    gateway,
    task_id: str,
    answer: str,
    attempts: int = 30,
    interval: float = 0.5,
    wait: bool = True,
) -> dict:
    """Send the user's answer to the current question and poll for the next reply."""
    task = require_task(db, task_id)
    if not task.planning_session_key:
        raise ValidationError("Planning has not been started")
    if task.planning_complete:
        raise ValidationError("Planning is already complete")
    if not answer or not answer.strip():
        raise ValidationError("Answer is required")

    key = task.planning_session_key

    ensure_connected(gateway)
    _send(gateway, key, build_answer_prompt(answer), f"planning-answer-{task.id}-{_now_ms()}")

    # A late reply to the previous question may be recorded concurrently.
    message = PlanningMessage(role="user", content=answer, timestamp=_now_ms())
    messages = task.planning_messages
    while not append_planning_message(db, task.id, messages, message):
        messages = require_task(db, task.id).planning_messages
    db.commit()
    log_length = len(messages) + 1

    reply = poll_for_reply(gateway, key, attempts, interval) if wait else None
    parsed = record_reply(db, task.id, reply, log_length) if reply is not None else None
    return _reply_result(key, require_task(db, task.id), reply, parsed)


def get_planning_state(db: sqlite3.Connection, gateway, task_id: str) -> dict:
    """Planning state for a task, reconciled with the gateway when a reply is missing."""
    task = require_task(db, task_id)
    messages = task.planning_messages
    awaiting = bool(messages) and messages[-1].role == "user"

    if awaiting and task.planning_session_key and not task.planning_complete:
        log_length = len(messages)
        try:
            ensure_connected(gateway)
            reply = fetch_latest_reply(gateway, task.planning_session_key)
        except (GatewayError, GatewayUnavailable) as e:
            logger.warning("Could not reconcile planning for task %s: %s", task.id, e)
            reply = None
        if reply is not None:
            logger.info("Synced planning reply for task %s from gateway", task.id)
            record_reply(db, task.id, reply, log_length)
            task = require_task(db, task.id)

    return {
        "taskId": task.id,
        "sessionKey": task.planning_session_key,
        "messages": [message_dict(m) for m in task.planning_messages],
        "currentQuestion": current_question(task.planning_messages),
        "isComplete": task.planning_complete,
        "spec": task.planning_spec,
        "agents": task.planning_agents,
        "isStarted": bool(task.planning_messages),
    }


def message_dict(m: PlanningMessage) -> dict:
    return {"role": m.role, "content": m.content, "timestamp": m.timestamp}


# ── Planning Watcher ─────────────────────────────────────────────────────────


class PlanningWatcher:
    """Background thread that polls the gateway for a task's next planning reply."""

    def __init__(
        self,
        db_path: Path,
        gateway,
        task_id: str,
        attempts: int = 30,
        interval: float = 0.5,
    ):
        self.db_path = db_path
        self.gateway = gateway
        self.task_id = task_id
        self.attempts = attempts
        self.interval = interval
        self.found = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the watcher thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"planning-watcher-{self.task_id}", daemon=True
        )
        self._thread.start()
        logger.info("Planning watcher started for task %s", self.task_id)

    def stop(self):
        """Signal the watcher thread to stop."""
        self._stop_event.set()
        self.join(timeout=10)

    def join(self, timeout: float | None = None):
        if self._thread:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        """Main watcher loop."""
        for _ in range(self.attempts):
            if self._stop_event.wait(self.interval):
                return
            try:
                if self._check():
                    self.found = True
                    return
            except Exception:
                logger.exception("Error in planning watcher for task %s", self.task_id)
        logger.info("Planning watcher for task %s gave up waiting", self.task_id)

    def _check(self) -> bool:
        """Record the next reply if the gateway has one. True when done."""
        from mission_control.db.engine import init_db

        db = init_db(self.db_path)
        try:
            task = get_task(db, self.task_id)
            if not task or not task.planning_session_key or task.planning_complete:
                return True
            if task.planning_messages and task.planning_messages[-1].role == "assistant":
                return True  # Reconciled by a read in the meantime
            log_length = len(task.planning_messages)
            ensure_connected(self.gateway)
            reply = fetch_latest_reply(self.gateway, task.planning_session_key)
            if reply is not None:
                record_reply(db, task.id, reply, log_length)
                return True
            return False
        finally:
            db.close()
