"""
Health check and status endpoints
"""
from fastapi import APIRouter, Request

from shelfsense import __version__
from shelfsense.config import get_settings
from shelfsense.utils.helpers import format_timestamp, utcnow

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": format_timestamp(utcnow()),
        "version": __version__
    }


@router.get("/status")
async def get_status(request: Request):
    """Get system status"""
    settings = get_settings()
    capabilities = getattr(request.app.state, "capabilities", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "slow_mover_rule": settings.slow_mover_rule,
        "schema": capabilities.to_dict() if capabilities else None,
        "scheduler_running": bool(scheduler and scheduler.running),
        "timestamp": format_timestamp(utcnow()),
    }
