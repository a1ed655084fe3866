"""Engine and sessions for the transcript store.

DuckDB backs local runs and tests; PostgreSQL is used in production, where
message rows are locked during flushes. The URL comes from
``AppSettings.chat_history_db_url``.
"""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from chatledger.modules.config.config_manager import AppSettings

from .models import Base
from .transcript_repository import TranscriptRepository

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "duckdb:///data/transcripts.duckdb"

# Relative DuckDB paths are anchored here, next to pyproject.toml and .env
PROJECT_ROOT = Path(__file__).resolve().parents[3]

_DUCKDB_PREFIX = "duckdb:///"


def resolve_db_url(db_url: str, base_dir: Optional[Path] = None) -> str:
    """Anchor a relative DuckDB file and make sure its folder exists."""
    if not db_url.startswith(_DUCKDB_PREFIX):
        return db_url
    db_path = db_url[len(_DUCKDB_PREFIX):]
    if db_path == ":memory:":
        return db_url
    path = Path(db_path)
    if not path.is_absolute():
        path = (base_dir or PROJECT_ROOT) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"{_DUCKDB_PREFIX}{path}"


def _redact(db_url: str) -> str:
    return db_url.split("@")[-1] if "@" in db_url else db_url


class TranscriptDatabase:
    """One engine and its session factory for a transcript database URL."""

    def __init__(self, db_url: str = DEFAULT_DB_URL, base_dir: Optional[Path] = None):
        self.url = resolve_db_url(db_url, base_dir)
        if self.is_postgres:
            # Concurrent generations each hold a session per flush
            self.engine: Engine = create_engine(
                self.url, pool_size=5, max_overflow=10, pool_pre_ping=True, echo=False,
            )
        else:
            self.engine = create_engine(self.url, echo=False)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info("Transcript database engine created: %s", _redact(self.url))

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "TranscriptDatabase":
        return cls(settings.chat_history_db_url or DEFAULT_DB_URL)

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgresql")

    def create_schema(self) -> None:
        """Create missing tables. Production deployments run the Alembic migration instead."""
        Base.metadata.create_all(self.engine)
        logger.info("Transcript tables created/verified")

    def repository(self) -> TranscriptRepository:
        return TranscriptRepository(self.session_factory)

    def dispose(self) -> None:
        self.engine.dispose()
