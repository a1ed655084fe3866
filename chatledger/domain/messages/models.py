"""Domain models for messages and their response versions."""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return _now_utc()
    return _now_utc()


class MessageRole(Enum):
    """Message role enumeration."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class VersionStatus(Enum):
    """Lifecycle of a single generation attempt.

    A version is created ``STREAMING`` and sealed exactly once into one of the
    terminal states when its attempt ends.
    """
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not VersionStatus.STREAMING


@dataclass
class VersionMetadata:
    """Per-version generation metadata."""
    model: Optional[str] = None
    provider: Optional[str] = None
    enable_web_search: Optional[bool] = None
    tokens: Optional[int] = None
    cost: Optional[float] = None
    error_details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, dropping unset fields."""
        data = {
            "model": self.model,
            "provider": self.provider,
            "enable_web_search": self.enable_web_search,
            "tokens": self.tokens,
            "cost": self.cost,
            "error_details": self.error_details,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VersionMetadata":
        """Create from dictionary."""
        data = data or {}
        return cls(
            model=data.get("model"),
            provider=data.get("provider"),
            enable_web_search=data.get("enable_web_search"),
            tokens=data.get("tokens"),
            cost=data.get("cost"),
            error_details=data.get("error_details"),
        )


@dataclass
class Version:
    """One generation attempt for an assistant message."""
    content: str = ""
    timestamp: datetime = field(default_factory=_now_utc)
    metadata: VersionMetadata = field(default_factory=VersionMetadata)
    is_error: bool = False
    attachments: List[str] = field(default_factory=list)
    status: VersionStatus = VersionStatus.STREAMING

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata.to_dict(),
            "is_error": self.is_error,
            "attachments": list(self.attachments),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Version":
        """Create from dictionary."""
        return cls(
            content=data.get("content", ""),
            timestamp=_parse_datetime(data.get("timestamp")),
            metadata=VersionMetadata.from_dict(data.get("metadata")),
            is_error=bool(data.get("is_error", False)),
            attachments=list(data.get("attachments") or []),
            # Versions written before status tracking existed are treated as settled
            status=VersionStatus(data.get("status", VersionStatus.COMPLETE.value)),
        )


@dataclass
class Message:
    """Domain model for a chat message.

    For assistant messages ``content`` mirrors
    ``versions[current_version_index].content``; the versions are authoritative.
    """
    id: str = field(default_factory=_new_id)
    chat_id: str = ""
    role: MessageRole = MessageRole.USER
    content: str = ""
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)
    sequence_number: int = 0
    attachments: List[str] = field(default_factory=list)
    versions: List[Version] = field(default_factory=list)
    current_version_index: Optional[int] = None
    is_streaming: bool = False
    is_aborted: bool = False

    @property
    def is_assistant(self) -> bool:
        return self.role is MessageRole.ASSISTANT

    @property
    def current_version(self) -> Optional[Version]:
        if self.current_version_index is None:
            return None
        if 0 <= self.current_version_index < len(self.versions):
            return self.versions[self.current_version_index]
        return None

    def display_content(self) -> str:
        """Content to use when this message is replayed as a turn."""
        if self.is_assistant:
            version = self.current_version
            if version is not None:
                return version.content
        return self.content

    def sort_key(self):
        return (self.created_at, self.sequence_number)

    def touch(self) -> None:
        self.updated_at = _now_utc()

    def copy(self) -> "Message":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: Dict[str, Any] = {
            "id": self.id,
            "chat_id": self.chat_id,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "sequence_number": self.sequence_number,
            "attachments": list(self.attachments),
            "is_streaming": self.is_streaming,
            "is_aborted": self.is_aborted,
        }
        if self.is_assistant:
            data["versions"] = [v.to_dict() for v in self.versions]
            data["current_version_index"] = self.current_version_index
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Create from dictionary."""
        return cls(
            id=data.get("id") or _new_id(),
            chat_id=data.get("chat_id", ""),
            role=MessageRole(data.get("role", "user")),
            content=data.get("content", ""),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
            sequence_number=int(data.get("sequence_number", 0)),
            attachments=list(data.get("attachments") or []),
            versions=[Version.from_dict(v) for v in data.get("versions") or []],
            current_version_index=data.get("current_version_index"),
            is_streaming=bool(data.get("is_streaming", False)),
            is_aborted=bool(data.get("is_aborted", False)),
        )


@dataclass(frozen=True)
class Turn:
    """A role-tagged turn handed to the completion source."""
    role: MessageRole
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


def turns_to_llm_messages(turns: List[Turn]) -> List[Dict[str, str]]:
    """Get turns formatted for the LLM API."""
    return [turn.to_dict() for turn in turns]
