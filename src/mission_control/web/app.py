"""HTTP API for mission control."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from mission_control.config import get_config
from mission_control.core import activity as activity_mod
from mission_control.core import agents as agents_mod
from mission_control.core import completion as completion_mod
from mission_control.core import dispatch as dispatch_mod
from mission_control.core import planning as planning_mod
from mission_control.core import sessions as sessions_mod
from mission_control.core import tasks as tasks_mod
from mission_control.core.errors import MissionControlError, ValidationError
from mission_control.db.engine import get_db
from mission_control.integrations.gateway import get_gateway_client
from mission_control.web.serializers import (
    activity_dict,
    agent_dict,
    deliverable_dict,
    orchestrator_dict,
    session_dict,
    task_dict,
)

logger = logging.getLogger(__name__)


def _gateway(request: Request):
    return request.app.state.gateway or get_gateway_client(get_config())


async def _respond(work, *args) -> JSONResponse:
    """Run ``work(db, config, *args) -> (body, status)`` off the event loop.

    Errors from the taxonomy map to their status; anything else is a logged 500.
    """
    config = get_config()

    def run():
        with get_db(config.db_path) as db:
            return work(db, config, *args)

    try:
        body, status_code = await run_in_threadpool(run)
    except MissionControlError as e:
        return JSONResponse(e.to_dict(), status_code=e.status_code)
    except Exception:
        logger.exception("Unhandled error in %s", work.__name__)
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    return JSONResponse(body, status_code=status_code)


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    params = request.query_params

    def work(db, config):
        tasks = tasks_mod.list_tasks(
            db,
            workspace_id=params.get("workspace_id"),
            status=params.get("status"),
            assigned_agent_id=params.get("agent_id"),
        )
        return [task_dict(t) for t in tasks], 200

    return await _respond(work)


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]

    def work(db, config):
        task = tasks_mod.require_task(db, task_id)
        td = task_dict(task)
        td["activities"] = [
            activity_dict(a) for a in activity_mod.get_task_activities(db, task.id)
        ]
        td["deliverables"] = [
            deliverable_dict(d) for d in activity_mod.get_task_deliverables(db, task.id)
        ]
        return td, 200

    return await _respond(work)


async def api_dispatch_task(request: Request):
    task_id = request.path_params["task_id"]
    gateway = _gateway(request)

    def work(db, config):
        outcome = dispatch_mod.dispatch_task(db, gateway, config, task_id)
        if not outcome.dispatched:
            return {
                "success": False,
                "warning": "Other orchestrators available",
                "message": outcome.warning,
                "otherOrchestrators": [orchestrator_dict(a) for a in outcome.other_orchestrators],
            }, 409
        return {
            "success": True,
            "task_id": outcome.task.id,
            "agent_id": outcome.agent.id,
            "session_id": outcome.session.external_session_id,
            "message": "Task dispatched to agent",
        }, 200

    return await _respond(work)


# ── Planning ──────────────────────────────────────────────────────────────────


async def api_get_planning(request: Request):
    task_id = request.path_params["task_id"]
    gateway = _gateway(request)

    def work(db, config):
        return planning_mod.get_planning_state(db, gateway, task_id), 200

    return await _respond(work)


def _watch_planning(request: Request, config, gateway, task_id: str):
    watcher = planning_mod.PlanningWatcher(
        config.db_path,
        gateway,
        task_id,
        attempts=config.planning_poll_attempts,
        interval=config.planning_poll_interval,
    )
    watchers = request.app.state.watchers
    watchers[:] = [w for w in watchers if w.is_alive()]
    watchers.append(watcher)
    watcher.start()


async def api_start_planning(request: Request):
    task_id = request.path_params["task_id"]
    gateway = _gateway(request)

    def work(db, config):
        background = config.planning_background
        result = planning_mod.start_planning(
            db,
            gateway,
            task_id,
            attempts=config.planning_poll_attempts,
            interval=config.planning_poll_interval,
            wait=not background,
        )
        if background:
            _watch_planning(request, config, gateway, task_id)
        return result, 200

    return await _respond(work)


async def api_answer_planning(request: Request):
    task_id = request.path_params["task_id"]
    gateway = _gateway(request)
    try:
        body = await _json_body(request)
    except ValidationError as e:
        return JSONResponse(e.to_dict(), status_code=e.status_code)
    answer = body.get("answer")

    def work(db, config):
        if not isinstance(answer, str):
            raise ValidationError("Answer is required")
        background = config.planning_background
        result = planning_mod.answer_planning(
            db,
            gateway,
            task_id,
            answer,
            attempts=config.planning_poll_attempts,
            interval=config.planning_poll_interval,
            wait=not background,
        )
        if background:
            _watch_planning(request, config, gateway, task_id)
        return result, 200

    return await _respond(work)


# ── Completion Webhook ────────────────────────────────────────────────────────


async def api_completion_webhook(request: Request):
    raw_body = await request.body()
    signature = request.headers.get(completion_mod.SIGNATURE_HEADER)
    # Authenticate before the store is even opened.
    try:
        completion_mod.verify_signature(get_config().webhook_secret, raw_body, signature)
    except MissionControlError as e:
        return JSONResponse(e.to_dict(), status_code=e.status_code)

    def work(db, config):
        payload = completion_mod.parse_payload(raw_body)
        return completion_mod.handle_completion(db, payload), 200

    return await _respond(work)


async def api_completion_status(request: Request):
    def work(db, config):
        return {
            "status": "active",
            "recent_completions": activity_mod.recent_completions(db, limit=10),
            "endpoint": dispatch_mod.WEBHOOK_PATH,
        }, 200

    return await _respond(work)


# ── Agents ────────────────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    params = request.query_params

    def work(db, config):
        agents = agents_mod.list_agents(
            db, workspace_id=params.get("workspace_id"), status=params.get("status")
        )
        return [agent_dict(a) for a in agents], 200

    return await _respond(work)


async def api_get_agent_gateway(request: Request):
    agent_id = request.path_params["agent_id"]

    def work(db, config):
        agent = agents_mod.require_agent(db, agent_id)
        session = sessions_mod.get_active_session(db, agent.id)
        if not session:
            return {"linked": False, "session": None}, 200
        return {"linked": True, "session": session_dict(session)}, 200

    return await _respond(work)


async def api_link_agent_gateway(request: Request):
    agent_id = request.path_params["agent_id"]
    gateway = _gateway(request)
    try:
        body = await _json_body(request)
    except ValidationError:
        body = {}
    external_id = body.get("external_session_id")

    def work(db, config):
        session = sessions_mod.link_agent(
            db, gateway, agent_id, external_id if isinstance(external_id, str) else None
        )
        return {"linked": True, "session": session_dict(session)}, 201

    return await _respond(work)


async def api_unlink_agent_gateway(request: Request):
    agent_id = request.path_params["agent_id"]

    def work(db, config):
        sessions_mod.unlink_agent(db, agent_id)
        return {"linked": False, "success": True}, 200

    return await _respond(work)


# ── App ───────────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: Starlette):
    app.state.watchers = []
    config = get_config()
    if not config.webhook_secret:
        logger.warning(
            "WEBHOOK_SECRET is not set: completion webhooks are accepted WITHOUT "
            "signature verification. Set it before exposing this server."
        )
    try:
        yield
    finally:
        for watcher in app.state.watchers:
            watcher.stop()


def create_app(gateway=None) -> Starlette:
    routes = [
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}/dispatch", api_dispatch_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/planning", api_get_planning, methods=["GET"]),
        Route("/api/tasks/{task_id}/planning", api_start_planning, methods=["POST"]),
        Route("/api/tasks/{task_id}/planning/answer", api_answer_planning, methods=["POST"]),
        Route("/api/webhooks/agent-completion", api_completion_webhook, methods=["POST"]),
        Route("/api/webhooks/agent-completion", api_completion_status, methods=["GET"]),
        Route("/api/agents", api_list_agents, methods=["GET"]),
        Route("/api/agents/{agent_id}/gateway", api_get_agent_gateway, methods=["GET"]),
        Route("/api/agents/{agent_id}/gateway", api_link_agent_gateway, methods=["POST"]),
        Route("/api/agents/{agent_id}/gateway", api_unlink_agent_gateway, methods=["DELETE"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.gateway = gateway
    app.state.watchers = []
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app()
    uvicorn.run(app, host=host, port=port)
