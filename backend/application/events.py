"""Session lifecycle events + async event bus feeding the realtime layer."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SESSION_STARTED = "SESSION_STARTED"
    SESSION_PAUSED = "SESSION_PAUSED"
    SESSION_RESUMED = "SESSION_RESUMED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    SESSION_CANCELLED = "SESSION_CANCELLED"
    SESSION_EXPIRED = "SESSION_EXPIRED"


@dataclass
class SessionEvent:
    """Published by the state machine after a transition has been persisted."""
    event_type: EventType
    session_id: str
    company_id: str
    payload: Optional[Dict[str, Any]] = None
    event_id: str = field(default_factory=lambda: str(uuid4()))


Handler = Callable[[SessionEvent], Coroutine[Any, Any, None]]


class AsyncEventBus:
    """
    Buffers events in an asyncio.Queue and dispatches them to async handlers.

    The engine runs in worker threads, so ``publish_sync`` hops onto the
    consumer's loop when one is running.
    """

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._running: bool = False
        self._consumer_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def register_handler(self, event_type: EventType, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def unregister_handler(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish_sync(self, event: SessionEvent) -> bool:
        """
        Publish from non-async code (engine worker threads).

        Returns False only when the event could not be queued at all.
        """
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._enqueue, event)
                return True
        return self._enqueue(event)

    def _enqueue(self, event: SessionEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            # Drop the oldest event when full
            try:
                dropped = self._queue.get_nowait()
                self._queue.put_nowait(event)
                logger.warning("Event queue full, dropped %s for %s", dropped.event_type.value, dropped.session_id)
                return True
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                return False

    async def _consume_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            for handler in list(self._handlers.get(event.event_type, [])):
                try:
                    await handler(event)
                except Exception:
                    logger.exception("Handler error for %s", event.event_type.value)
            self._queue.task_done()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._consumer_task = asyncio.create_task(self._consume_loop())
        logger.info("Event bus started")

    async def stop(self) -> None:
        self._running = False
        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None
        self._loop = None
        logger.info("Event bus stopped")

    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._running
