"""Transcript store interface protocol."""

from typing import Callable, List, Optional, Protocol, Tuple, runtime_checkable

from chatledger.domain.chats.models import Attachment, Chat
from chatledger.domain.messages.ledger import FlushTarget
from chatledger.domain.messages.models import Message, MessageRole, VersionStatus


@runtime_checkable
class TranscriptStore(Protocol):
    """Durable, transactional storage for chats and messages.

    Every method commits before returning. ``append_chunk`` and
    ``finalize_generation`` are single atomic read-modify-write patches of one
    message.
    """

    def insert_chat(self, chat: Chat) -> Chat: ...

    def get_chat(self, chat_id: str) -> Optional[Chat]: ...

    def list_chats(self, owner: str, limit: int = 50, offset: int = 0) -> List[Chat]: ...

    def update_chat_title(self, chat_id: str, title: str) -> bool: ...

    def delete_chat(self, chat_id: str) -> int: ...

    def insert_message(self, message: Message) -> Message: ...

    def get_message(self, message_id: str) -> Optional[Message]: ...

    def list_messages(self, chat_id: str, descending: bool = False) -> List[Message]: ...

    def count_messages(self, chat_id: str) -> int: ...

    def save_message(self, message: Message) -> bool: ...

    def mutate_message(self, message_id: str, mutate: Callable[[Message], None]) -> Optional[Message]: ...

    def delete_messages(self, message_ids: List[str]) -> int: ...

    def append_chunk(self, message_id: str, target: FlushTarget, chunk: str) -> Optional[int]: ...

    def finalize_generation(
        self,
        message_id: str,
        version_index: Optional[int],
        status: VersionStatus,
        error_details: Optional[str] = None,
    ) -> bool: ...

    def is_message_aborted(self, message_id: str) -> bool: ...

    def set_aborted(self, message_id: str) -> bool: ...

    def insert_branch(self, chat: Chat, messages: List[Message]) -> Chat: ...

    def search_messages(
        self,
        owner: str,
        query: str,
        chat_id: Optional[str] = None,
        role: Optional[MessageRole] = None,
        limit: int = 20,
    ) -> List[Tuple[Message, Chat]]: ...

    def save_attachment(self, attachment: Attachment) -> Attachment: ...

    def get_attachments(self, attachment_ids: List[str]) -> List[Attachment]: ...
