"""Operation events emitted by the services + the async bus that fans them out."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RENTAL_STARTED = "RENTAL_STARTED"
    RENTAL_COMPLETED = "RENTAL_COMPLETED"
    RENTAL_CANCELLED = "RENTAL_CANCELLED"
    VEHICLE_CHANGED = "VEHICLE_CHANGED"
    DAY_STARTED = "DAY_STARTED"
    DAY_ENDED = "DAY_ENDED"
    DAY_RESTARTED = "DAY_RESTARTED"
    CONSISTENCY_WARNING = "CONSISTENCY_WARNING"
    RECONCILIATION_FINISHED = "RECONCILIATION_FINISHED"


@dataclass
class OperationEvent:
    event_type: EventType
    subject_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "type": self.event_type.value,
            "subjectId": self.subject_id,
            "payload": self.payload,
        }


Handler = Callable[[OperationEvent], Coroutine[Any, Any, None]]


class AsyncEventBus:
    """
    Buffers events in an ``asyncio.Queue`` and dispatches them to async handlers.

    Services run in FastAPI's worker threads, so ``publish_sync`` hands the event
    over to the loop thread. Before ``start()`` events are dropped.
    """

    def __init__(self, maxsize: int = 1000):
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._running: bool = False
        self._consumer_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None

    def register_handler(self, event_type: EventType, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def register_all(self, handler: Handler) -> None:
        for event_type in EventType:
            self.register_handler(event_type, handler)

    def unregister_handler(self, event_type: EventType, handler: Handler) -> None:
        if event_type in self._handlers:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

    async def publish(self, event: OperationEvent) -> None:
        if self._queue is None:
            return
        await self._queue.put(event)

    def publish_sync(self, event: OperationEvent) -> bool:
        """
        Publish from non-async code (any thread).

        Returns False when the bus is not running.
        """
        if not self._running or self._loop is None:
            return False
        if threading.get_ident() == self._loop_thread:
            self._enqueue(event)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, event)
        return True

    def _enqueue(self, event: OperationEvent) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # drop the oldest event
            try:
                self._queue.get_nowait()
                self._queue.put_nowait(event)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                logger.warning("Event bus full, dropped %s", event.event_type.value)

    async def _consume_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            for handler in self._handlers.get(event.event_type, []):
                try:
                    await handler(event)
                except Exception:
                    logger.exception("Handler error for %s", event.event_type.value)
            self._queue.task_done()

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._running = True
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
        return self._queue.qsize() if self._queue else 0

    @property
    def is_running(self) -> bool:
        return self._running
