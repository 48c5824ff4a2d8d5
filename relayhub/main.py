"""
RelayHub main entry point.

Starts a FastAPI HTTP server that:
  1. Accepts session/machine/message mutations from CLI agent processes at /cli/...
  2. Answers web/voice client queries at /api/...
  3. Streams sync events for the caller's namespace over SSE at /events

The caller's namespace is taken from the X-Relay-Namespace header.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from relayhub.config import (
    HOST, PORT, PUBLIC_URL, PERMISSION_DEBOUNCE_MS, READY_COOLDOWN_MS, LOG_LEVEL, HUB_VERSION,
    get_config_dict,
)
from relayhub.db import crud
from relayhub.db.crud import NamespaceConflictError
from relayhub.db.database import get_db, close_db
from relayhub.db.models import Session, Machine, Message, SyncEvent, VersionedUpdateResult
from relayhub.notifications.hub import NotificationHub
from relayhub.push.channel import PushNotificationChannel
from relayhub.push.service import PushService
from relayhub.sync.engine import SyncEngine, SessionAccessError

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("relayhub")

SSE_KEEPALIVE_SECONDS = 15

# Access-check reasons -> HTTP status. The engine never produces a status itself.
_ACCESS_STATUS = {
    "namespace-missing": 401,
    "access-denied": 403,
    "not-found": 404,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: open DB, load state, wire notifications
    db = await get_db()
    engine = SyncEngine(db)
    await engine.start()
    push_service = PushService(db)
    hub = NotificationHub(
        engine,
        [PushNotificationChannel(push_service, PUBLIC_URL)],
        permission_debounce_ms=PERMISSION_DEBOUNCE_MS,
        ready_cooldown_ms=READY_COOLDOWN_MS,
    )
    app.state.db = db
    app.state.engine = engine
    app.state.hub = hub
    logger.info(f"RelayHub running at http://{HOST}:{PORT}")
    yield
    # Shutdown: stop notifications, close DB
    hub.stop()
    await push_service.aclose()
    await close_db()


app = FastAPI(
    title="RelayHub",
    description="Relays coding-agent sessions between CLI agents and web/voice clients.",
    version=HUB_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(SessionAccessError)
async def _session_access_error(request: Request, exc: SessionAccessError):
    status = _ACCESS_STATUS.get(exc.reason, 404)
    return JSONResponse({"error": exc.reason, "session_id": exc.session_id}, status_code=status)


@app.exception_handler(NamespaceConflictError)
async def _namespace_conflict(request: Request, exc: NamespaceConflictError):
    return JSONResponse({"error": "namespace-conflict", "detail": str(exc)}, status_code=409)


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def _engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def _require_namespace(namespace: str | None) -> str:
    if not namespace:
        raise HTTPException(status_code=401, detail="namespace-missing")
    return namespace


def _require_session(engine: SyncEngine, session_id: str, namespace: str | None) -> Session:
    access = engine.resolve_session_access(session_id, namespace)
    if not access.ok:
        raise SessionAccessError(session_id, access.reason)
    return access.session


def _require_machine(engine: SyncEngine, machine_id: str, namespace: str | None) -> Machine:
    namespace = _require_namespace(namespace)
    machine = engine.get_machine(machine_id)
    if machine is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    if machine.namespace != namespace:
        raise HTTPException(status_code=403, detail="Machine access denied")
    return machine


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _session_to_dict(s: Session) -> dict:
    return {
        "id": s.id, "namespace": s.namespace, "tag": s.tag, "machine_id": s.machine_id,
        "seq": s.seq, "created_at": _iso(s.created_at), "updated_at": _iso(s.updated_at),
        "active": s.active, "active_at": _iso(s.active_at),
        "metadata": s.metadata, "metadata_version": s.metadata_version,
        "agent_state": s.agent_state, "agent_state_version": s.agent_state_version,
        "thinking": s.thinking, "thinking_at": _iso(s.thinking_at),
    }


def _machine_to_dict(m: Machine) -> dict:
    return {
        "id": m.id, "namespace": m.namespace, "seq": m.seq,
        "created_at": _iso(m.created_at), "updated_at": _iso(m.updated_at),
        "active": m.active, "active_at": _iso(m.active_at),
        "metadata": m.metadata, "metadata_version": m.metadata_version,
        "daemon_state": m.daemon_state, "daemon_state_version": m.daemon_state_version,
    }


def _message_to_dict(m: Message) -> dict:
    return {"id": m.id, "session_id": m.session_id, "seq": m.seq, "content": m.content,
            "local_id": m.local_id, "created_at": _iso(m.created_at)}


def _event_to_dict(ev: SyncEvent) -> dict:
    data: dict[str, Any] = {"type": ev.type}
    if ev.session_id:
        data["session_id"] = ev.session_id
    if ev.machine_id:
        data["machine_id"] = ev.machine_id
    if ev.message is not None:
        data["message"] = _message_to_dict(ev.message)
    return data


def _versioned_response(result: VersionedUpdateResult) -> JSONResponse:
    if result.ok:
        return JSONResponse({"result": "success", "version": result.version, "value": result.value})
    if result.reason == "not-found":
        return JSONResponse({"result": "not-found"}, status_code=404)
    return JSONResponse(
        {"result": result.reason, "version": result.version, "value": result.value}, status_code=409,
    )


# ─────────────────────────────────────────────
# SSE event stream
# ─────────────────────────────────────────────

@app.get("/events")
async def sse_stream(request: Request, x_relay_namespace: str | None = Header(default=None)):
    """
    SSE stream of sync events for the caller's namespace.
    Each connection subscribes its own queue to the sync engine.
    """
    namespace = _require_namespace(x_relay_namespace)
    queue: asyncio.Queue[SyncEvent] = asyncio.Queue()

    def listener(ev: SyncEvent) -> None:
        if ev.namespace == namespace:
            queue.put_nowait(ev)

    unsubscribe = _engine(request).subscribe(listener)

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    ev = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {ev.type}\ndata: {json.dumps(_event_to_dict(ev))}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# Web/voice client API
# ─────────────────────────────────────────────

@app.get("/api/sessions")
async def api_sessions(request: Request, x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    sessions = _engine(request).get_sessions_by_namespace(namespace)
    return [_session_to_dict(s) for s in sessions]


@app.get("/api/sessions/{session_id}")
async def api_session(session_id: str, request: Request, x_relay_namespace: str | None = Header(default=None)):
    session = _require_session(_engine(request), session_id, x_relay_namespace)
    return {"session": _session_to_dict(session)}


@app.get("/api/sessions/{session_id}/messages")
async def api_messages(
    session_id: str,
    request: Request,
    limit: int = crud.MAX_PAGE_SIZE,
    before_seq: int | None = None,
    x_relay_namespace: str | None = Header(default=None),
):
    engine = _engine(request)
    _require_session(engine, session_id, x_relay_namespace)
    msgs = await engine.get_messages(session_id, limit=limit, before_seq=before_seq)
    return {"messages": [_message_to_dict(m) for m in msgs]}


@app.get("/api/sessions/{session_id}/messages/after")
async def api_messages_after(
    session_id: str,
    request: Request,
    after_seq: int = 0,
    limit: int = crud.MAX_PAGE_SIZE,
    x_relay_namespace: str | None = Header(default=None),
):
    engine = _engine(request)
    _require_session(engine, session_id, x_relay_namespace)
    msgs = await engine.get_messages_after(session_id, after_seq=after_seq, limit=limit)
    return {"messages": [_message_to_dict(m) for m in msgs]}


@app.delete("/api/sessions/{session_id}")
async def api_delete_session(session_id: str, request: Request,
                             x_relay_namespace: str | None = Header(default=None)):
    engine = _engine(request)
    _require_session(engine, session_id, x_relay_namespace)
    deleted = await engine.delete_session(session_id, x_relay_namespace)
    return {"ok": deleted}


@app.get("/api/machines")
async def api_machines(request: Request, x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    return [_machine_to_dict(m) for m in _engine(request).get_machines_by_namespace(namespace)]


@app.get("/api/machines/{machine_id}")
async def api_machine(machine_id: str, request: Request, x_relay_namespace: str | None = Header(default=None)):
    return {"machine": _machine_to_dict(_require_machine(_engine(request), machine_id, x_relay_namespace))}


class PushSubscribe(BaseModel):
    endpoint: str
    p256dh: str
    auth: str

class PushUnsubscribe(BaseModel):
    endpoint: str

@app.post("/api/push/subscribe")
async def api_push_subscribe(body: PushSubscribe, request: Request,
                             x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    await crud.push_add(request.app.state.db, namespace, body.endpoint, body.p256dh, body.auth)
    return {"ok": True}

@app.post("/api/push/unsubscribe")
async def api_push_unsubscribe(body: PushUnsubscribe, request: Request,
                               x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    removed = await crud.push_remove(request.app.state.db, namespace, body.endpoint)
    return {"ok": removed}


# ─────────────────────────────────────────────
# CLI agent API (mutations)
# ─────────────────────────────────────────────

class SessionCreate(BaseModel):
    tag: str | None = None
    metadata: Any = None
    agent_state: Any = None
    machine_id: str | None = None

class MessageCreate(BaseModel):
    content: Any
    local_id: str | None = None

class VersionedUpdate(BaseModel):
    value: Any = None
    expected_version: int

class SessionAlive(BaseModel):
    thinking: bool = False

class SessionMerge(BaseModel):
    target_session_id: str

class MachineCreate(BaseModel):
    id: str
    metadata: Any = None
    daemon_state: Any = None

@app.post("/cli/sessions")
async def cli_session_create(body: SessionCreate, request: Request,
                             x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    s = await _engine(request).get_or_create_session(
        body.tag, body.metadata, body.agent_state, namespace, body.machine_id,
    )
    return {"session": _session_to_dict(s)}

@app.post("/cli/sessions/{session_id}/messages", status_code=201)
async def cli_post_message(session_id: str, body: MessageCreate, request: Request,
                           x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    m = await _engine(request).add_message(session_id, body.content, namespace, local_id=body.local_id)
    return {"message": _message_to_dict(m)}

@app.post("/cli/sessions/{session_id}/metadata")
async def cli_session_metadata(session_id: str, body: VersionedUpdate, request: Request,
                               x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    result = await _engine(request).update_session_metadata(session_id, body.value, body.expected_version, namespace)
    return _versioned_response(result)

@app.post("/cli/sessions/{session_id}/agent-state")
async def cli_session_agent_state(session_id: str, body: VersionedUpdate, request: Request,
                                  x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    result = await _engine(request).update_session_agent_state(
        session_id, body.value, body.expected_version, namespace,
    )
    return _versioned_response(result)

@app.post("/cli/sessions/{session_id}/alive")
async def cli_session_alive(session_id: str, body: SessionAlive, request: Request,
                            x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    s = await _engine(request).session_alive(session_id, namespace, thinking=body.thinking)
    return {"session": _session_to_dict(s)}

@app.post("/cli/sessions/{session_id}/end")
async def cli_session_end(session_id: str, request: Request,
                          x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    s = await _engine(request).session_end(session_id, namespace)
    return {"session": _session_to_dict(s)}

@app.post("/cli/sessions/{session_id}/merge")
async def cli_session_merge(session_id: str, body: SessionMerge, request: Request,
                            x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    result = await _engine(request).merge_sessions(session_id, body.target_session_id, namespace)
    return {"moved": result.moved, "from_max_seq": result.from_max_seq, "to_max_seq": result.to_max_seq}

@app.post("/cli/machines")
async def cli_machine_create(body: MachineCreate, request: Request,
                             x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    m = await _engine(request).get_or_create_machine(body.id, body.metadata, body.daemon_state, namespace)
    return {"machine": _machine_to_dict(m)}

@app.post("/cli/machines/{machine_id}/metadata")
async def cli_machine_metadata(machine_id: str, body: VersionedUpdate, request: Request,
                               x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    result = await _engine(request).update_machine_metadata(machine_id, body.value, body.expected_version, namespace)
    return _versioned_response(result)

@app.post("/cli/machines/{machine_id}/daemon-state")
async def cli_machine_daemon_state(machine_id: str, body: VersionedUpdate, request: Request,
                                   x_relay_namespace: str | None = Header(default=None)):
    namespace = _require_namespace(x_relay_namespace)
    result = await _engine(request).update_machine_daemon_state(
        machine_id, body.value, body.expected_version, namespace,
    )
    return _versioned_response(result)

@app.post("/cli/machines/{machine_id}/alive")
async def cli_machine_alive(machine_id: str, request: Request,
                            x_relay_namespace: str | None = Header(default=None)):
    engine = _engine(request)
    _require_machine(engine, machine_id, x_relay_namespace)
    m = await engine.machine_alive(machine_id, x_relay_namespace)
    if m is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    return {"machine": _machine_to_dict(m)}

@app.post("/cli/machines/{machine_id}/end")
async def cli_machine_end(machine_id: str, request: Request,
                          x_relay_namespace: str | None = Header(default=None)):
    engine = _engine(request)
    _require_machine(engine, machine_id, x_relay_namespace)
    m = await engine.machine_end(machine_id, x_relay_namespace)
    if m is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    return {"machine": _machine_to_dict(m)}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "RelayHub", "version": HUB_VERSION}


@app.get("/api/settings")
async def api_settings():
    """Effective runtime configuration (env > data/config.json > defaults)."""
    return get_config_dict()


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("relayhub.main:app", host=HOST, port=PORT, reload=True)
