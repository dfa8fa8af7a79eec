from .events import router as events_router
from .generations import router as generations_router
from .health import router as health_router

__all__ = [
    "events_router",
    "generations_router",
    "health_router",
]
