"""Transcript persistence module using SQLAlchemy with DuckDB/PostgreSQL."""

from .database import DEFAULT_DB_URL, TranscriptDatabase, resolve_db_url
from .models import AttachmentRecord, Base, ChatRecord, MessageRecord
from .transcript_repository import TranscriptRepository

__all__ = [
    "DEFAULT_DB_URL",
    "TranscriptDatabase",
    "resolve_db_url",
    "TranscriptRepository",
    "Base",
    "ChatRecord",
    "MessageRecord",
    "AttachmentRecord",
]
