"""Domain models for chats and attachments."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4


@dataclass
class Chat:
    """Domain model for a chat transcript."""
    id: str = field(default_factory=lambda: str(uuid4()))
    title: str = "New Chat"
    owner: str = ""
    model: str = ""
    provider: str = ""
    parent_chat_id: Optional[str] = None
    branch_point: Optional[int] = None
    is_shared: bool = False
    share_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_owned_by(self, user: str) -> bool:
        return bool(user) and self.owner == user

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "owner": self.owner,
            "model": self.model,
            "provider": self.provider,
            "parent_chat_id": self.parent_chat_id,
            "branch_point": self.branch_point,
            "is_shared": self.is_shared,
            "share_id": self.share_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Attachment:
    """Metadata for an uploaded file. Messages hold references to its id."""
    storage_ref: str
    file_name: str
    file_type: str
    file_size: int
    uploaded_by: str
    id: str = field(default_factory=lambda: str(uuid4()))
    extracted_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "storage_ref": self.storage_ref,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "uploaded_by": self.uploaded_by,
            "extracted_text": self.extracted_text,
        }
