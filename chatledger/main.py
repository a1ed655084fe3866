"""
Chat transcript backend: chats, versioned assistant messages and streamed
generations persisted through the database.
"""

# Suppress LiteLLM verbose logging BEFORE any transitive import of litellm.
# litellm._logging reads LITELLM_LOG at import time and defaults to DEBUG.
import os
from pathlib import Path as _Path

from dotenv import dotenv_values as _dotenv_values

_env_path = _Path(__file__).parent.parent / ".env"
_env_values = _dotenv_values(_env_path) if _env_path.exists() else {}

_suppress_litellm = _env_values.get("FEATURE_SUPPRESS_LITELLM_LOGGING", "true").lower() in ("true", "1", "yes")

if _suppress_litellm and "LITELLM_LOG" not in os.environ:
    os.environ["LITELLM_LOG"] = "ERROR"

del _Path, _dotenv_values, _env_path, _env_values, _suppress_litellm

# ruff: noqa: E402
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatledger.core.log_sanitizer import sanitize_for_logging
from chatledger.core.middleware import AuthMiddleware
from chatledger.core.otel_config import setup_opentelemetry
from chatledger.domain.errors import (
    AuthorizationError,
    DomainError,
    NotFoundError,
    ValidationError,
)
from chatledger.infrastructure.app_factory import app_factory
from chatledger.routes.chat_routes import router as chat_router
from chatledger.routes.health_routes import router as health_router
from chatledger.routes.message_routes import router as message_router
from chatledger.version import VERSION

load_dotenv(dotenv_path="../.env")

otel_config = setup_opentelemetry("chatledger", VERSION)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting chat transcript backend")

    config = app_factory.get_config_manager()
    logger.info(f"Backend initialized with {len(config.llm_config.models)} LLM models")

    # Opens the transcript database unless a service has already been wired in
    app_factory.get_chat_service()

    yield

    logger.info("Shutting down; stopping running generations")
    await app_factory.shutdown()


app = FastAPI(
    title="Chat Ledger",
    description="Chat transcripts with versioned, database-streamed assistant replies",
    version=VERSION,
    lifespan=lifespan,
)

config = app_factory.get_config_manager()

app.add_middleware(
    AuthMiddleware,
    debug_mode=config.app_settings.debug_mode,
    auth_header_name=config.app_settings.auth_user_header,
    test_user=config.app_settings.test_user,
)

otel_config.instrument_fastapi(app)

app.include_router(health_router)
app.include_router(chat_router)
app.include_router(message_router)


def _status_for(error: DomainError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, AuthorizationError):
        return 403
    if isinstance(error, ValidationError):
        return 400
    return 500


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("Domain error on %s: %s", request.url.path, sanitize_for_logging(exc.message), exc_info=exc)
    else:
        logger.info("Request to %s rejected: %s", request.url.path, sanitize_for_logging(exc.message))
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "error_type": type(exc).__name__},
    )


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("CHATLEDGER_HOST", "127.0.0.1")
    port = int(os.getenv("PORT", 8000))

    uvicorn.run(app, host=host, port=port)
