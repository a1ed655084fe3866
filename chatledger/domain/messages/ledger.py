"""Version ledger for assistant messages.

An assistant message keeps every generation attempt in ``versions`` and a
pointer, ``current_version_index``, to the one being displayed. These functions
are the only code that mutates that pair. Each one leaves the message with

    content == versions[current_version_index].content

so callers can persist the message as a whole without re-deriving the mirror.

Versions only ever grow by append. Existing versions change only by having text
appended to their content, or by being sealed when their attempt ends.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Union
from uuid import uuid4

from chatledger.domain.errors import ValidationError, VersionIndexError

from .models import Message, MessageRole, Version, VersionMetadata, VersionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppendVersion:
    """Flush target that creates a new version on first write."""
    initial_metadata: Optional[VersionMetadata] = None


@dataclass(frozen=True)
class UpdateVersionAt:
    """Flush target that appends to an existing version."""
    index: int


FlushTarget = Union[AppendVersion, UpdateVersionAt]


def _sync_mirror(message: Message) -> None:
    version = message.current_version
    if version is not None:
        message.content = version.content


def _require_assistant(message: Message) -> None:
    if message.role is not MessageRole.ASSISTANT:
        raise ValidationError(
            f"Message {message.id} is a {message.role.value} message; only assistant messages carry versions"
        )


def resolve_target(
    message: Message,
    target_version_index: Optional[int] = None,
    initial_metadata: Optional[VersionMetadata] = None,
) -> Optional[FlushTarget]:
    """Translate an integer version index into a tagged flush target.

    ``None`` targets the current version, ``len(versions)`` appends a new one and
    any other in-range index updates that version. Anything else is rejected and
    ``None`` is returned.
    """
    if target_version_index is None:
        if message.current_version_index is None:
            return AppendVersion(initial_metadata)
        return UpdateVersionAt(message.current_version_index)
    if target_version_index < 0 or target_version_index > len(message.versions):
        logger.warning(
            "Rejected version index %s for message %s (versions=%d)",
            target_version_index, message.id, len(message.versions),
        )
        return None
    if target_version_index == len(message.versions):
        return AppendVersion(initial_metadata)
    return UpdateVersionAt(target_version_index)


def append_version(
    message: Message,
    initial_content: str = "",
    metadata: Optional[VersionMetadata] = None,
    status: VersionStatus = VersionStatus.STREAMING,
) -> int:
    """Add a new version, make it current and mirror its content."""
    _require_assistant(message)
    message.versions.append(
        Version(
            content=initial_content,
            metadata=metadata or VersionMetadata(),
            status=status,
        )
    )
    message.current_version_index = len(message.versions) - 1
    _sync_mirror(message)
    message.touch()
    return message.current_version_index


def update_version(message: Message, index: int, content_delta: str) -> None:
    """Append text to an existing version."""
    _require_assistant(message)
    if index < 0 or index >= len(message.versions):
        raise VersionIndexError(
            f"Version index {index} is out of range for message {message.id} ({len(message.versions)} versions)"
        )
    message.versions[index].content += content_delta
    _sync_mirror(message)
    message.touch()


def switch_current(message: Message, index: int) -> None:
    """Point the message at another version.

    Version contents are left untouched. The streaming flag is cleared because
    the selected version is treated as settled for display.
    """
    _require_assistant(message)
    if not message.versions:
        raise VersionIndexError(f"Message {message.id} has no versions to switch to")
    if index < 0 or index >= len(message.versions):
        raise VersionIndexError(
            f"Version index {index} is out of range for message {message.id} ({len(message.versions)} versions)"
        )
    message.current_version_index = index
    message.is_streaming = False
    _sync_mirror(message)
    message.touch()


def begin_attempt(message: Message, target: FlushTarget) -> None:
    """Mark the message as generating into ``target``.

    Clears a stale abort request from an earlier attempt and reopens an
    existing target version for appends.
    """
    _require_assistant(message)
    message.is_streaming = True
    message.is_aborted = False
    if isinstance(target, UpdateVersionAt) and 0 <= target.index < len(message.versions):
        message.versions[target.index].status = VersionStatus.STREAMING
    message.touch()


def _inherited_metadata(message: Message) -> VersionMetadata:
    if message.versions:
        last = message.versions[-1].metadata
        return VersionMetadata(
            model=last.model,
            provider=last.provider,
            enable_web_search=last.enable_web_search,
        )
    return VersionMetadata(model="unknown", provider="unknown")


def apply_chunk(message: Message, target: FlushTarget, chunk: str) -> Optional[int]:
    """Apply one flushed chunk to the message in memory.

    Returns the index of the version written, or ``None`` when the target is
    not valid for this message. A rejected chunk leaves the message unchanged.
    """
    if message.role is not MessageRole.ASSISTANT:
        logger.warning("Message %s is not an assistant message, skipping chunk", message.id)
        return None

    if isinstance(target, AppendVersion):
        metadata = target.initial_metadata or _inherited_metadata(message)
        return append_version(message, initial_content=chunk, metadata=replace(metadata))

    if target.index < 0 or target.index >= len(message.versions):
        logger.warning(
            "Version index %s not found for message %s (versions=%d), skipping chunk",
            target.index, message.id, len(message.versions),
        )
        return None
    update_version(message, target.index, chunk)
    return target.index


def seal_version(
    message: Message,
    index: int,
    status: VersionStatus,
    error_details: Optional[str] = None,
) -> bool:
    """Mark a version's attempt as finished and clear the streaming flag."""
    if not status.is_terminal:
        raise ValidationError(f"Cannot seal a version with non-terminal status {status.value}")
    message.is_streaming = False
    if status is VersionStatus.ABORTED:
        message.is_aborted = True
    if index < 0 or index >= len(message.versions):
        message.touch()
        return False
    version = message.versions[index]
    version.status = status
    if status is VersionStatus.ERROR:
        version.is_error = True
        version.metadata.error_details = error_details
    _sync_mirror(message)
    message.touch()
    return True


def check_mirror(message: Message) -> bool:
    """True when the top-level content mirrors the current version."""
    if message.role is not MessageRole.ASSISTANT:
        return True
    version = message.current_version
    if version is None:
        return not message.versions
    return message.content == version.content


def clone_message(message: Message, chat_id: str) -> Message:
    """Deep-copy a message into another chat with a fresh id.

    The full version ledger and pointer are carried over; creation time and
    sequence number are kept so relative order survives the copy.
    """
    clone = message.copy()
    clone.id = str(uuid4())
    clone.chat_id = chat_id
    clone.touch()
    clone.is_streaming = False
    clone.is_aborted = False
    if clone.role is not MessageRole.ASSISTANT:
        clone.versions = []
        clone.current_version_index = None
    return clone
