"""FastAPI middleware for authentication and request logging."""

import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/api/health", "/api/heartbeat"}


def get_user_from_header(header_value: Optional[str]) -> Optional[str]:
    """Extract user email from authentication header value."""
    if not header_value:
        return None
    return header_value.strip() or None


class AuthMiddleware(BaseHTTPMiddleware):
    """Reads the authenticated user from a header set by the reverse proxy.

    Authentication itself happens upstream; this only records who the caller is.
    """

    def __init__(
        self,
        app,
        debug_mode: bool = False,
        auth_header_name: str = "X-User-Email",
        test_user: str = "test@test.com",
    ):
        super().__init__(app)
        self.debug_mode = debug_mode
        self.auth_header_name = auth_header_name
        self.test_user = test_user

    async def dispatch(self, request: Request, call_next) -> Response:
        logger.debug("Request: %s %s", request.method, request.url.path)

        if request.url.path in _PUBLIC_PATHS:
            return await call_next(request)

        user_email = get_user_from_header(request.headers.get(self.auth_header_name))
        if not user_email and self.debug_mode:
            user_email = self.test_user

        if not user_email:
            logger.warning(f"Missing authentication for API endpoint: {request.url.path}")
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

        request.state.user_email = user_email
        return await call_next(request)
