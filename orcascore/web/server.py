"""FastAPI command surface for the webview front-end.

Every command the UI invokes maps to one route below. Planning progress and
completion events are pushed to all WebSocket clients on ``/ws`` as they are
emitted on the event bus.

Components are built in the lifespan and kept on ``app.state``; routes never
create storage or HTTP handles of their own.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from pydantic import BaseModel, Field

from infra.chat import ChatGateway, ChatMessage
from infra.providers import ProviderConfigError, ProviderRequestError
from orcascore.agents.runner import PlanningRunner
from orcascore.core.config import Settings, get_settings
from orcascore.core.database import Database
from orcascore.core.edit_locks import EditLockManager, InvalidLockOwnerError
from orcascore.core.events import ChannelEvent, EventBus
from orcascore.core.logging import get_logger
from orcascore.core.repository import AgentRepository, SubtaskRepository
from orcascore.core.settings_store import SettingNotFoundError, SettingsStore
from orcascore.core.sweeper import stale_lock_sweeper

logger = get_logger("web.server")


# ── Models ────────────────────────────────────────────────────────────────

class PlanningRequest(BaseModel):
    title: str
    description: str | None = None


class LockRequest(BaseModel):
    locked_by: str
    original_content: str | None = None


class ChatRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    system: str | None = None
    max_tokens: int = Field(default=4096, gt=0)
    tools: list[dict[str, Any]] | None = None


class SettingValue(BaseModel):
    value: str


# ── Error mapping ─────────────────────────────────────────────────────────

def _provider_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ProviderConfigError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


# ── WebSocket broadcast (wired to event bus) ─────────────────────────────

class Broadcaster:
    """Fan-out of bus events to every connected WebSocket client."""

    def __init__(self) -> None:
        self.clients: set[WebSocket] = set()

    async def __call__(self, event: ChannelEvent) -> None:
        if not self.clients:
            return
        message = json.dumps({"type": "event", "data": event.to_dict()})
        disconnected: set[WebSocket] = set()
        for ws in tuple(self.clients):
            try:
                await ws.send_text(message)
            except Exception as exc:
                logger.warning("WS send failed | %s | %s", event.name, exc)
                disconnected.add(ws)
        if disconnected:
            self.clients.difference_update(disconnected)


# ── App factory ───────────────────────────────────────────────────────────

def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application. ``settings`` defaults to the process-wide ``get_settings()``."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = Database(settings.database_path)
        await db.initialize()

        store = SettingsStore(db)
        locks = EditLockManager(db)
        events = EventBus()
        broadcaster = Broadcaster()
        events.subscribe(broadcaster)

        http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        gateway = ChatGateway(store, client=http, env_api_key=settings.anthropic_api_key)
        runner = PlanningRunner(db, gateway, events, settings)

        sweeper = stale_lock_sweeper(
            locks,
            timeout_minutes=settings.lock_stale_timeout_minutes,
            interval_seconds=settings.lock_sweep_interval_seconds,
        )
        sweeper.start()

        app.state.db = db
        app.state.store = store
        app.state.locks = locks
        app.state.events = events
        app.state.broadcaster = broadcaster
        app.state.gateway = gateway
        app.state.runner = runner
        app.state.sweeper = sweeper
        logger.info("Web server started (database ready, event bus wired, lock sweeper running)")

        yield

        await runner.shutdown()
        await sweeper.stop()
        events.unsubscribe(broadcaster)
        await http.aclose()
        await db.close()
        logger.info("Lifespan cleanup complete")

    app = FastAPI(title="OrcaScore", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings

    # ── Planning ──────────────────────────────────────────────────────────

    @app.post("/api/tasks/{task_id}/planning")
    async def start_planning(task_id: int, req: PlanningRequest, request: Request):
        status = request.app.state.runner.start(task_id, req.title, req.description)
        return {"status": status}

    @app.get("/api/tasks/{task_id}/subtasks")
    async def list_subtasks(task_id: int, request: Request):
        subtasks = await SubtaskRepository(request.app.state.db).list_for_task(task_id)
        return {"subtasks": [s.model_dump(mode="json") for s in subtasks]}

    @app.get("/api/agents")
    async def list_agents(request: Request):
        agents = await AgentRepository(request.app.state.db).list_agents()
        return {"agents": [a.model_dump() for a in agents]}

    # ── Edit locks ────────────────────────────────────────────────────────

    @app.post("/api/locks/cleanup")
    async def cleanup_stale_locks(request: Request, timeout_minutes: int = Query(5, ge=0)):
        removed = await request.app.state.locks.cleanup_stale(timeout_minutes)
        return {"removed": removed}

    @app.post("/api/locks/{task_id}")
    async def acquire_lock(task_id: int, req: LockRequest, request: Request):
        try:
            acquired = await request.app.state.locks.acquire(task_id, req.locked_by, req.original_content)
        except InvalidLockOwnerError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"acquired": acquired}

    @app.delete("/api/locks/{task_id}")
    async def release_lock(task_id: int, request: Request):
        await request.app.state.locks.release(task_id)
        return {"status": "released"}

    @app.get("/api/locks/{task_id}")
    async def check_lock(task_id: int, request: Request):
        status = await request.app.state.locks.check(task_id)
        return status.model_dump()

    @app.get("/api/locks/{task_id}/original-content")
    async def get_original_content(task_id: int, request: Request):
        content = await request.app.state.locks.get_original_content(task_id)
        return {"original_content": content}

    @app.delete("/api/locks")
    async def force_release_all_locks(request: Request):
        released = await request.app.state.locks.force_release_all()
        return {"released": released}

    # ── Chat / models ─────────────────────────────────────────────────────

    @app.post("/api/chat")
    async def send_chat_message(req: ChatRequest, request: Request):
        gateway: ChatGateway = request.app.state.gateway
        try:
            raw = await gateway.send_chat_message(
                req.model, req.messages, system=req.system, max_tokens=req.max_tokens, tools=req.tools,
            )
        except (ProviderConfigError, ProviderRequestError) as exc:
            raise _provider_error(exc) from exc
        return Response(content=raw, media_type="application/json")

    @app.post("/api/connection/test")
    async def test_connection(request: Request):
        try:
            message = await request.app.state.gateway.test_connection()
        except (ProviderConfigError, ProviderRequestError) as exc:
            raise _provider_error(exc) from exc
        return {"status": message}

    @app.get("/api/models")
    async def get_available_models(request: Request):
        try:
            models = await request.app.state.gateway.list_models()
        except (ProviderConfigError, ProviderRequestError) as exc:
            raise _provider_error(exc) from exc
        return {"models": [m.model_dump() for m in models]}

    @app.get("/api/models/resolve")
    async def resolve_model_id(request: Request, name: str = Query(..., min_length=1)):
        try:
            model_id = await request.app.state.gateway.resolve_model(name)
        except (ProviderConfigError, ProviderRequestError) as exc:
            raise _provider_error(exc) from exc
        return {"name": name, "model_id": model_id}

    # ── Settings ──────────────────────────────────────────────────────────

    @app.get("/api/settings/{key}")
    async def get_setting(key: str, request: Request):
        try:
            value = await request.app.state.store.get(key)
        except SettingNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"key": key, "value": value}

    @app.put("/api/settings/{key}")
    async def set_setting(key: str, body: SettingValue, request: Request):
        await request.app.state.store.set(key, body.value)
        return {"key": key, "value": body.value}

    @app.delete("/api/settings/{key}")
    async def delete_setting(key: str, request: Request):
        await request.app.state.store.delete(key)
        return {"status": "deleted"}

    # ── Events ────────────────────────────────────────────────────────────

    @app.get("/api/events")
    async def get_events(request: Request, limit: int = Query(200, ge=1, le=1000)):
        """Return recent planning events."""
        return {"events": request.app.state.events.history(limit)}

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await ws.accept()
        broadcaster: Broadcaster = ws.app.state.broadcaster
        broadcaster.clients.add(ws)
        logger.info("WebSocket client connected (%d total)", len(broadcaster.clients))

        try:
            # Send recent event history on connect
            for evt in ws.app.state.events.history(50):
                await ws.send_text(json.dumps({"type": "event", "data": evt}))
            while True:
                data = await ws.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("WS ignoring non-JSON message")
                    continue
                if isinstance(msg, dict) and msg.get("type") == "ping":
                    await ws.send_text(json.dumps({"type": "pong"}))
        except WebSocketDisconnect:
            broadcaster.clients.discard(ws)
            logger.info("WebSocket client disconnected (%d remaining)", len(broadcaster.clients))

    return app


app = create_app()
