"""
Logging helpers and the request-scoped user accessor.
"""

import logging
import re
from typing import Any

from fastapi import Request

logger = logging.getLogger(__name__)

_CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f-\x9f]')
# Unicode LINE SEPARATOR and PARAGRAPH SEPARATOR
_UNICODE_NEWLINES_RE = re.compile(r'[\u2028\u2029]')
_STANDARD_NEWLINES_RE = re.compile(r'(\r\n|\r|\n)')


def sanitize_for_logging(value: Any) -> str:
    """
    Sanitize a value for safe logging by removing newlines (including Unicode
    and CRLF) and control characters, to defend against log injection.

    Examples:
        >>> sanitize_for_logging("Hello\\nWorld")
        'HelloWorld'
        >>> sanitize_for_logging("Test\\x1b[31mRed\\x1b[0m")
        'TestRed'
        >>> sanitize_for_logging(123)
        '123'
    """
    if value is None:
        return ''
    if not isinstance(value, str):
        value = str(value)
    value = _CONTROL_CHARS_RE.sub('', value)
    value = _UNICODE_NEWLINES_RE.sub('', value)
    value = _STANDARD_NEWLINES_RE.sub('', value)
    return value


async def get_current_user(request: Request) -> str:
    """Get current user from request state (set by middleware)."""
    return getattr(request.state, 'user_email', 'test@test.com')
