"""FastAPI entry point for the vehicle rental pricing & reconciliation backend."""
import asyncio
import contextlib
import logging

import socketio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from domain.errors import RentalEngineError

logging.basicConfig(
    level=get_settings().logging_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("app.main")

from interfaces import admin_router, debug_router, ledger_router, rental_router, settings_router  # noqa: E402
from interfaces import deps  # noqa: E402
from infrastructure.socketio_manager import register_push_handlers, set_ledger_service, sio  # noqa: E402

set_ledger_service(deps.ledger_service)
register_push_handlers(deps.event_bus)

app = FastAPI(title="Vehicle Rental Pricing & Reconciliation")

app.include_router(rental_router)
app.include_router(ledger_router)
app.include_router(admin_router)
app.include_router(settings_router)
app.include_router(debug_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:5174"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Socket.IO mounted on top of FastAPI
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)


@app.exception_handler(RentalEngineError)
async def _rental_engine_error(request: Request, exc: RentalEngineError) -> JSONResponse:
    """Typed rejections -> 400/404/409 with a stable ``reason`` code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.reason, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {
        "status": "ok",
        "configVersion": deps.settings.version,
        "storage": deps.settings.database_backend,
        "now": deps.clock.now().isoformat(),
    }


# Background tasks ----------------------------------------------
@app.on_event("startup")
async def _start_background_tasks() -> None:  # pragma: no cover - runtime wiring
    """Event consumer + optional auto-end sweep."""
    await deps.event_bus.start()

    interval = float(deps.settings.ledger.get("auto_end_interval_seconds", 0) or 0)
    if interval <= 0:
        logger.info("Background tasks started: event bus (auto-end sweep disabled)")
        return

    async def _auto_end_loop():
        while True:
            try:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, deps.ledger_service.auto_end_stale)
            except Exception:
                logger.exception("Auto-end sweep failed")
            await asyncio.sleep(interval)

    app.state._auto_end_task = asyncio.create_task(_auto_end_loop())
    logger.info("Background tasks started: event bus + auto-end sweep every %ss", interval)


@app.on_event("shutdown")
async def _stop_background_tasks() -> None:  # pragma: no cover - runtime wiring
    task = getattr(app.state, "_auto_end_task", None)
    if task:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await deps.event_bus.stop()
    logger.info("Background tasks stopped")
