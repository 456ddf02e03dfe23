from .rental_router import router as rental_router
from .ledger_router import router as ledger_router
from .admin_router import router as admin_router
from .settings_router import router as settings_router
from .debug_router import router as debug_router

__all__ = [
    "rental_router",
    "ledger_router",
    "admin_router",
    "settings_router",
    "debug_router",
]
