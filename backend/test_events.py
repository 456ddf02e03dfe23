"""Event bus hand-off from worker threads and the Socket.IO channel mapping."""
import asyncio

from application.events import AsyncEventBus, EventType, OperationEvent
from infrastructure.socketio_manager import channel_for


def test_publish_before_start_is_dropped():
    bus = AsyncEventBus()

    assert bus.publish_sync(OperationEvent(EventType.DAY_STARTED, "2026-03-10")) is False


def test_events_from_worker_threads_reach_handlers():
    received = []

    async def scenario():
        bus = AsyncEventBus()

        async def handler(event):
            received.append(event.subject_id)

        bus.register_handler(EventType.RENTAL_COMPLETED, handler)
        await bus.start()
        loop = asyncio.get_running_loop()
        for rental_id in ("MRT-20260310-001", "MRT-20260310-002"):
            event = OperationEvent(EventType.RENTAL_COMPLETED, rental_id)
            assert await loop.run_in_executor(None, bus.publish_sync, event)
        # unrelated event type, no handler registered
        bus.publish_sync(OperationEvent(EventType.DAY_ENDED, "2026-03-10"))
        for _ in range(50):
            if len(received) == 2:
                break
            await asyncio.sleep(0.02)
        await bus.stop()

    asyncio.run(scenario())

    assert received == ["MRT-20260310-001", "MRT-20260310-002"]


def test_full_queue_drops_the_oldest_event():
    async def scenario():
        bus = AsyncEventBus(maxsize=2)
        await bus.start()
        for number in range(3):
            bus.publish_sync(OperationEvent(EventType.RENTAL_STARTED, f"R{number}"))
        pending = [bus._queue.get_nowait().subject_id for _ in range(bus.pending_count())]
        await bus.stop()
        return pending

    # the consumer has not run yet: nothing awaited between publishes
    assert asyncio.run(scenario()) == ["R1", "R2"]


def test_channel_mapping():
    assert channel_for(OperationEvent(EventType.VEHICLE_CHANGED, "R1")) == "rental_update"
    assert channel_for(OperationEvent(EventType.DAY_RESTARTED, "2026-03-10")) == "ledger_state"
    assert channel_for(OperationEvent(EventType.CONSISTENCY_WARNING, "R1")) == "system_warning"
    assert channel_for(OperationEvent(EventType.RECONCILIATION_FINISHED, "reprice")) == "reconciliation_report"
