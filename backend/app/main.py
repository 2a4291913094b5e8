"""FastAPI entry point for the timed-session billing engine."""
import asyncio
import contextlib
import logging

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from application.events import EventType

logging.basicConfig(
    level=str(get_settings().logging.get("level", "INFO")).upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

from interfaces import sessions_router, admin_router  # noqa: E402
from interfaces import deps  # noqa: E402
from infrastructure.socketio_manager import sio, set_engine, push_session_event  # noqa: E402

set_engine(deps.engine)

app = FastAPI(title="Timed-Session Billing Engine")

app.include_router(sessions_router)
app.include_router(admin_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=deps.settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Socket.IO mounted on top of FastAPI as one ASGI app
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {
        "status": "ok",
        "configVersion": deps.settings.version,
        "storage": deps.settings.storage_backend,
        "pendingLineItems": deps.billing_service.pending_count(),
    }


# Background tasks ----------------------------------------------
@app.on_event("startup")
async def _start_background_tasks() -> None:  # pragma: no cover - runtime wiring
    """Event consumer + safety-net sweep for countdowns nobody looks at."""
    for event_type in EventType:
        deps.event_bus.unregister_handler(event_type, push_session_event)
        deps.event_bus.register_handler(event_type, push_session_event)
    await deps.event_bus.start()

    interval = float((deps.settings.engine or {}).get("sweep_interval_seconds", 30))
    if interval <= 0:
        logger.info("Expiry sweep disabled")
        return

    async def _sweep_loop():
        while True:
            await asyncio.sleep(interval)
            loop = asyncio.get_running_loop()
            try:
                # engine calls block on locks and storage, keep them off the loop
                await loop.run_in_executor(None, deps.engine.sweep_expired)
                await loop.run_in_executor(None, deps.billing_service.flush_pending)
            except Exception:
                logger.exception("Sweep loop error")

    app.state._sweep_task = asyncio.create_task(_sweep_loop())
    logger.info("Background tasks started: event bus + expiry sweep every %.0fs", interval)


@app.on_event("shutdown")
async def _stop_background_tasks() -> None:  # pragma: no cover - runtime wiring
    sweep_task = getattr(app.state, "_sweep_task", None)
    if sweep_task:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    await deps.event_bus.stop()
    logger.info("Background tasks stopped")
