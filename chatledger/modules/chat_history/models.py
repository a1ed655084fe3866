"""SQLAlchemy models for transcript persistence.

Uses String(36) UUIDs and Text for JSON to maximize DuckDB compatibility.
No database-level foreign key constraints since DuckDB does not support
CASCADE or UPDATE on FK-constrained tables. Referential integrity is
enforced in the repository layer.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def _uuid_default():
    return str(uuid.uuid4())


def _now_utc():
    return datetime.now(timezone.utc)


class ChatRecord(Base):
    """A chat owned by one user, optionally branched from another chat."""

    __tablename__ = "chats"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    owner = Column(String(255), nullable=False, index=True)
    title = Column(String(500), nullable=False, default="New Chat")
    model = Column(String(255), nullable=True)
    provider = Column(String(100), nullable=True)
    parent_chat_id = Column(String(36), nullable=True, index=True)
    branch_point = Column(Integer, nullable=True)
    is_shared = Column(Boolean, nullable=False, default=False)
    share_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now_utc, onupdate=_now_utc, nullable=False)

    __table_args__ = (
        Index("ix_chats_owner_updated", "owner", "updated_at"),
    )


class MessageRecord(Base):
    """A single message within a chat.

    Assistant messages keep their response versions in ``versions_json``;
    ``content`` mirrors the current version.
    """

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    chat_id = Column(String(36), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)
    sequence_number = Column(Integer, nullable=False, default=0)
    attachments_json = Column(Text, nullable=True)
    versions_json = Column(Text, nullable=True)
    current_version_index = Column(Integer, nullable=True)
    is_streaming = Column(Boolean, nullable=False, default=False)
    is_aborted = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_messages_chat_created", "chat_id", "created_at"),
    )


class AttachmentRecord(Base):
    """Metadata for an uploaded file; the bytes live in external storage."""

    __tablename__ = "attachments"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    storage_ref = Column(String(1000), nullable=False)
    file_name = Column(String(500), nullable=False)
    file_type = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)
    uploaded_by = Column(String(255), nullable=False, index=True)
    extracted_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)
