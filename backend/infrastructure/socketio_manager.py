"""Socket.IO push: operation events go out to dashboards in the ``monitor`` room.

    services -> AsyncEventBus -> (this module) -> clients
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, TYPE_CHECKING

import socketio

if TYPE_CHECKING:
    from application.events import AsyncEventBus, OperationEvent
    from application.ledger_service import LedgerService

logger = logging.getLogger(__name__)

MONITOR_ROOM = "monitor"

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=["http://localhost:5173", "http://localhost:5174"],
    logger=False,
    engineio_logger=False,
)

_ledger_service: Optional["LedgerService"] = None


def set_ledger_service(service: "LedgerService") -> None:
    """Used to send today's ledger to a freshly subscribed dashboard."""
    global _ledger_service
    _ledger_service = service


# ========== Socket.IO events ==========

@sio.event
async def connect(sid: str, environ: dict) -> None:
    logger.debug("Socket.IO client connected: %s", sid)


@sio.event
async def disconnect(sid: str) -> None:
    logger.debug("Socket.IO client disconnected: %s", sid)


@sio.event
async def subscribe_monitor(sid: str, data: dict = None) -> None:
    await sio.enter_room(sid, MONITOR_ROOM)
    logger.debug("%s subscribed to monitor", sid)
    if _ledger_service is not None:
        await sio.emit("ledger_state", _ledger_service.today().to_dict(), to=sid)


@sio.event
async def unsubscribe_monitor(sid: str, data: dict = None) -> None:
    await sio.leave_room(sid, MONITOR_ROOM)


# ========== push (event bus handlers) ==========

_EVENT_CHANNELS = {
    "RENTAL_STARTED": "rental_update",
    "RENTAL_COMPLETED": "rental_update",
    "RENTAL_CANCELLED": "rental_update",
    "VEHICLE_CHANGED": "rental_update",
    "DAY_STARTED": "ledger_state",
    "DAY_ENDED": "ledger_state",
    "DAY_RESTARTED": "ledger_state",
    "CONSISTENCY_WARNING": "system_warning",
    "RECONCILIATION_FINISHED": "reconciliation_report",
}


def channel_for(event: "OperationEvent") -> str:
    return _EVENT_CHANNELS.get(event.event_type.value, "operation_event")


async def push_event(event: "OperationEvent") -> None:
    """Best effort: a failed emit is logged, never raised."""
    message: Dict[str, Any] = event.to_dict()
    try:
        await sio.emit(channel_for(event), message, room=MONITOR_ROOM)
    except Exception:  # socket errors must not break the event consumer
        logger.exception("Socket.IO push failed for %s", event.event_type.value)


def register_push_handlers(event_bus: "AsyncEventBus") -> None:
    event_bus.register_all(push_event)
