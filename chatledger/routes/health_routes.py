"""Health check routes for service monitoring and load balancing."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter

from chatledger.version import VERSION

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/heartbeat")
async def heartbeat() -> Dict[str, str]:
    """Lightweight heartbeat endpoint for uptime monitoring."""
    return {"status": "ok"}


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint for service monitoring.

    Reports service status along with the number of generations running in
    this process. Does not require authentication.
    """
    from chatledger.infrastructure.app_factory import app_factory

    service = app_factory._chat_service
    active = len(service.tasks.active_message_ids()) if service is not None else 0
    return {
        "status": "healthy",
        "service": "chatledger",
        "version": VERSION,
        "active_generations": active,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
