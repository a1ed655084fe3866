from .models import Message, MessageRole, Turn, Version, VersionMetadata, VersionStatus

__all__ = [
    "Message",
    "MessageRole",
    "Turn",
    "Version",
    "VersionMetadata",
    "VersionStatus",
]
