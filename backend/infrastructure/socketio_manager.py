"""Socket.IO manager: pushes session lifecycle events to dashboards.

Flow:
    SessionStateMachine -> AsyncEventBus -> push_session_event -> clients
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import socketio

from app.config import get_settings

if TYPE_CHECKING:
    from application.events import SessionEvent
    from application.state_machine import SessionStateMachine

logger = logging.getLogger(__name__)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=get_settings().cors_origins,
    logger=False,
    engineio_logger=False,
)

# sid -> company_id
_subscriptions: Dict[str, str] = {}
_engine: Optional["SessionStateMachine"] = None


def set_engine(engine: "SessionStateMachine") -> None:
    """Engine used to build the snapshot sent right after a subscription."""
    global _engine
    _engine = engine


# ========== Socket.IO handlers ==========

@sio.event
async def connect(sid: str, environ: dict) -> None:
    logger.debug("Client connected: %s", sid)


@sio.event
async def disconnect(sid: str) -> None:
    logger.debug("Client disconnected: %s", sid)
    if sid in _subscriptions:
        company_id = _subscriptions.pop(sid)
        await sio.leave_room(sid, f"company:{company_id}")


@sio.event
async def subscribe_company(sid: str, data: dict) -> None:
    """Follow the live sessions of one company."""
    company_id = (data or {}).get("companyId")
    if not company_id:
        return
    if sid in _subscriptions:
        await sio.leave_room(sid, f"company:{_subscriptions[sid]}")
    _subscriptions[sid] = company_id
    await sio.enter_room(sid, f"company:{company_id}")
    logger.debug("%s subscribed to company:%s", sid, company_id)
    await sio.emit("active_sessions", {"companyId": company_id, "sessions": _active_payload(company_id)}, to=sid)


@sio.event
async def unsubscribe_company(sid: str, data: dict = None) -> None:
    company_id = _subscriptions.pop(sid, None)
    if company_id:
        await sio.leave_room(sid, f"company:{company_id}")


@sio.event
async def subscribe_monitor(sid: str, data: dict = None) -> None:
    """Admin monitor: receives every session event of every company."""
    await sio.enter_room(sid, "monitor")
    logger.debug("%s subscribed to monitor", sid)


@sio.event
async def unsubscribe_monitor(sid: str, data: dict = None) -> None:
    await sio.leave_room(sid, "monitor")


# ========== Push helpers (registered on the event bus) ==========

async def push_session_event(event: "SessionEvent") -> None:
    state = dict(event.payload or {})
    state["event"] = event.event_type.value
    await sio.emit("session_state", state, room=f"company:{event.company_id}")
    await sio.emit("session_state", state, room="monitor")
    await push_system_event(event.event_type.value, event.company_id, event.session_id, _describe(event))


async def push_system_event(event_type: str, company_id: str, session_id: str, message: str) -> None:
    now_ms = int(time.time() * 1000)
    event = {
        "id": f"{now_ms}-{session_id}-{event_type}",
        "time": now_ms,
        "type": event_type,
        "companyId": company_id,
        "sessionId": session_id,
        "message": message,
    }
    await sio.emit("system_event", event, room="monitor")


def _active_payload(company_id: str) -> List[Dict[str, Any]]:
    if _engine is None:
        return []
    return [_engine.describe(s).to_payload() for s in _engine.list_active(company_id)]


def _describe(event: "SessionEvent") -> str:
    payload = event.payload or {}
    resource = payload.get("resourceRef", "?")
    verb = event.event_type.value.replace("SESSION_", "").lower()
    if payload.get("finalCost") is not None:
        return f"{resource} {verb}, {payload['finalCost']:.2f}"
    return f"{resource} {verb}"
