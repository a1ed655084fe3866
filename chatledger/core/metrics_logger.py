"""
Metrics logging utility for tracking generation activity without capturing
message content.

- Uses the [METRIC] prefix for easy filtering
- Includes the username for tracking
- Only logs metadata (counts, sizes, outcomes), never prompts or responses

Usage:
    from chatledger.core.metrics_logger import log_metric

    log_metric("llm_call", user_email, model="gpt-4o-mini", message_count=5)
    log_metric("generation_complete", user_email, outcome="aborted", flushes=3)
"""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def log_metric(
    event_type: str,
    user_email: Optional[str] = None,
    **kwargs: Any
) -> None:
    """
    Log a metric event.

    Respects FEATURE_METRICS_LOGGING_ENABLED; when disabled nothing is logged.

    Args:
        event_type: Type of event (e.g., "llm_call", "generation_complete", "branch_created")
        user_email: User's email address (will be sanitized)
        **kwargs: Additional metadata to log (only non-sensitive data)
    """
    # Imported here to avoid circular dependencies
    from chatledger.core.log_sanitizer import sanitize_for_logging
    from chatledger.modules.config import config_manager

    if not config_manager.app_settings.feature_metrics_logging_enabled:
        return

    sanitized_user = sanitize_for_logging(user_email) if user_email else "unknown"

    parts = [f"[METRIC] [{sanitized_user}] {event_type}"]

    if kwargs:
        metadata_parts = [
            f"{key}={sanitize_for_logging(value)}"
            for key, value in kwargs.items()
        ]
        parts.append(" ".join(metadata_parts))

    logger.info(" ".join(parts))
