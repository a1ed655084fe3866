"""
Error handling utilities - pure functions for classifying completion failures.
"""

import logging
from typing import Tuple

from chatledger.domain.errors import (
    LLMAuthenticationError,
    LLMError,
    LLMServiceError,
    LLMTimeoutError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

_USER_MESSAGES = {
    RateLimitError: "The AI service is experiencing high traffic. Please try again in a moment.",
    LLMTimeoutError: "The AI service request timed out. Please try again.",
    LLMAuthenticationError: "There was an authentication issue with the AI service. Please contact your administrator.",
    LLMServiceError: "The AI service encountered an error. Please try again or contact support if the issue persists.",
}


def classify_llm_error(error: Exception) -> Tuple[type, str, str]:
    """
    Classify LLM errors and return appropriate error type, user message, and log message.

    Returns:
        Tuple of (error_class, user_message, log_message).

    NOTE: user_message MUST NOT contain raw exception details or sensitive data.
    """
    error_str = str(error)
    error_type_name = type(error).__name__

    # Already classified upstream
    if isinstance(error, LLMError) and type(error) in _USER_MESSAGES:
        return (type(error), _USER_MESSAGES[type(error)], f"{error_type_name}: {error_str}")

    if "RateLimitError" in error_type_name or "rate limit" in error_str.lower() or "high traffic" in error_str.lower():
        return (RateLimitError, _USER_MESSAGES[RateLimitError], f"Rate limit error: {error_str}")

    if "Timeout" in error_type_name or "timeout" in error_str.lower() or "timed out" in error_str.lower():
        return (LLMTimeoutError, _USER_MESSAGES[LLMTimeoutError], f"Timeout error: {error_str}")

    if any(keyword in error_str.lower() for keyword in ["unauthorized", "authentication", "invalid api key", "invalid_api_key", "api key"]):
        return (LLMAuthenticationError, _USER_MESSAGES[LLMAuthenticationError], f"Authentication error: {error_str}")

    return (LLMServiceError, _USER_MESSAGES[LLMServiceError], f"LLM error: {error_str}")
