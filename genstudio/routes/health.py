"""
GenStudio Health Check Routes
"""
from fastapi import APIRouter, Request
from datetime import datetime

from ..config import get_settings

router = APIRouter(prefix="/api/health", tags=["health"])

START_TIME = datetime.utcnow()


def get_uptime() -> str:
    """Get uptime as human-readable string"""
    delta = datetime.utcnow() - START_TIME
    hours, remainder = divmod(delta.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    if delta.days > 0:
        return f"{delta.days}d {hours}h {minutes}m"
    elif hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    else:
        return f"{minutes}m {seconds}s"


@router.get("")
@router.get("/live")
async def health_live(request: Request):
    """
    Liveness check.
    Also reports how many pollers and downloads are in flight.
    """
    coordinator = request.app.state.coordinator
    return {
        "ok": True,
        "status": "alive",
        "environment": get_settings().environment,
        "uptime": get_uptime(),
        "active_pollers": len(coordinator.active_pollers()),
        "active_downloads": len(coordinator.downloads),
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
