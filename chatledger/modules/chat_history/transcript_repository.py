"""Repository for transcript persistence operations.

Handles chat and message CRUD, the streaming flush patch, branching copies,
search and attachment metadata. Every public method runs in its own session
and commits before returning, so each call is one transaction.

Referential integrity is enforced here rather than via database FK constraints
for DuckDB compatibility.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy import delete, desc, func
from sqlalchemy.orm import Session, sessionmaker

from chatledger.domain.chats.models import Attachment, Chat
from chatledger.domain.messages import ledger
from chatledger.domain.messages.ledger import FlushTarget
from chatledger.domain.messages.models import Message, MessageRole, Version, VersionStatus

from .models import AttachmentRecord, ChatRecord, MessageRecord

logger = logging.getLogger(__name__)


class TranscriptRepository:
    """SQLAlchemy-backed transcript store."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        return self._session_factory()

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def insert_chat(self, chat: Chat) -> Chat:
        with self._get_session() as session:
            session.add(_chat_to_record(chat))
            session.commit()
            return chat

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._get_session() as session:
            record = session.get(ChatRecord, chat_id)
            return _chat_from_record(record) if record else None

    def list_chats(self, owner: str, limit: int = 50, offset: int = 0) -> List[Chat]:
        """List chats for a user, most recently updated first."""
        with self._get_session() as session:
            records = session.query(ChatRecord).filter(
                ChatRecord.owner == owner,
            ).order_by(desc(ChatRecord.updated_at)).offset(offset).limit(limit).all()
            return [_chat_from_record(r) for r in records]

    def update_chat_title(self, chat_id: str, title: str) -> bool:
        with self._get_session() as session:
            record = session.get(ChatRecord, chat_id)
            if not record:
                return False
            record.title = title
            record.updated_at = _now_utc()
            session.commit()
            return True

    def delete_chat(self, chat_id: str) -> int:
        """Delete a chat and all of its messages. Returns the number of messages removed."""
        with self._get_session() as session:
            record = session.get(ChatRecord, chat_id)
            if not record:
                return 0
            removed = self._delete_chat_cascade(session, chat_id)
            session.commit()
            logger.info("Deleted chat %s with %d messages", chat_id, removed)
            return removed

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_message(self, message: Message) -> Message:
        """Insert a message at the end of its chat.

        Assigns the next per-chat sequence number, which breaks ties between
        messages created in the same instant.
        """
        with self._get_session() as session:
            message.sequence_number = self._next_sequence_number(session, message.chat_id)
            session.add(_message_to_record(message))
            chat = session.get(ChatRecord, message.chat_id)
            if chat:
                chat.updated_at = _now_utc()
            session.commit()
            return message

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._get_session() as session:
            record = session.get(MessageRecord, message_id)
            return _message_from_record(record) if record else None

    def list_messages(self, chat_id: str, descending: bool = False) -> List[Message]:
        """Messages of a chat ordered by creation time, then sequence number."""
        with self._get_session() as session:
            query = session.query(MessageRecord).filter(MessageRecord.chat_id == chat_id)
            if descending:
                query = query.order_by(desc(MessageRecord.created_at), desc(MessageRecord.sequence_number))
            else:
                query = query.order_by(MessageRecord.created_at, MessageRecord.sequence_number)
            return [_message_from_record(r) for r in query.all()]

    def count_messages(self, chat_id: str) -> int:
        with self._get_session() as session:
            return session.query(func.count(MessageRecord.id)).filter(
                MessageRecord.chat_id == chat_id,
            ).scalar() or 0

    def save_message(self, message: Message) -> bool:
        """Replace the stored state of an existing message with ``message``."""
        with self._get_session() as session:
            record = session.get(MessageRecord, message.id)
            if not record:
                return False
            _copy_message_onto_record(message, record)
            session.commit()
            return True

    def mutate_message(self, message_id: str, mutate: Callable[[Message], None]) -> Optional[Message]:
        """Load, change and store one message in a single transaction.

        Exceptions raised by ``mutate`` abort the transaction. Returns the
        updated message, or None when it does not exist.
        """
        with self._get_session() as session:
            record = self._load_for_update(session, message_id)
            if not record:
                return None
            message = _message_from_record(record)
            mutate(message)
            _copy_message_onto_record(message, record)
            session.commit()
            return message

    def delete_messages(self, message_ids: List[str]) -> int:
        if not message_ids:
            return 0
        with self._get_session() as session:
            count = session.query(func.count(MessageRecord.id)).filter(
                MessageRecord.id.in_(message_ids),
            ).scalar() or 0
            session.execute(
                delete(MessageRecord).where(MessageRecord.id.in_(message_ids))
            )
            session.commit()
            return count

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def append_chunk(self, message_id: str, target: FlushTarget, chunk: str) -> Optional[int]:
        """Apply one flushed chunk as a single read-modify-write.

        Returns the version index written, or None when the message is gone or
        the target is rejected (nothing is written in that case).
        """
        with self._get_session() as session:
            record = self._load_for_update(session, message_id)
            if not record:
                logger.warning("Message %s not found, dropping flushed chunk", message_id)
                return None
            message = _message_from_record(record)
            written = ledger.apply_chunk(message, target, chunk)
            if written is None:
                session.rollback()
                return None
            _copy_message_onto_record(message, record)
            session.commit()
            return written

    def finalize_generation(
        self,
        message_id: str,
        version_index: Optional[int],
        status: VersionStatus,
        error_details: Optional[str] = None,
    ) -> bool:
        """Seal the generated version and clear the streaming flag.

        When no version was ever written (``version_index`` is None) only the
        streaming flag is cleared. Returns False when the message is gone.
        """
        with self._get_session() as session:
            record = self._load_for_update(session, message_id)
            if not record:
                return False
            message = _message_from_record(record)
            if version_index is None:
                message.is_streaming = False
                if status is VersionStatus.ABORTED:
                    message.is_aborted = True
                message.touch()
            else:
                ledger.seal_version(message, version_index, status, error_details)
            _copy_message_onto_record(message, record)
            session.commit()
            return True

    def is_message_aborted(self, message_id: str) -> bool:
        with self._get_session() as session:
            record = session.get(MessageRecord, message_id)
            return bool(record and record.is_aborted)

    def set_aborted(self, message_id: str) -> bool:
        with self._get_session() as session:
            record = session.get(MessageRecord, message_id)
            if not record:
                return False
            record.is_aborted = True
            record.updated_at = _now_utc()
            session.commit()
            return True

    # ------------------------------------------------------------------
    # Branching and search
    # ------------------------------------------------------------------

    def insert_branch(self, chat: Chat, messages: List[Message]) -> Chat:
        """Insert a new chat together with its copied messages in one transaction."""
        with self._get_session() as session:
            session.add(_chat_to_record(chat))
            for message in messages:
                session.add(_message_to_record(message))
            session.commit()
            return chat

    def search_messages(
        self,
        owner: str,
        query: str,
        chat_id: Optional[str] = None,
        role: Optional[MessageRole] = None,
        limit: int = 20,
    ) -> List[Tuple[Message, Chat]]:
        """Case-insensitive substring search over message content in chats the user owns."""
        search_pattern = f"%{query}%"
        with self._get_session() as session:
            q = session.query(MessageRecord, ChatRecord).join(
                ChatRecord,
                MessageRecord.chat_id == ChatRecord.id,
            ).filter(
                ChatRecord.owner == owner,
                MessageRecord.content.ilike(search_pattern),
            )
            if chat_id:
                q = q.filter(MessageRecord.chat_id == chat_id)
            if role is not None:
                q = q.filter(MessageRecord.role == role.value)
            rows = q.order_by(desc(MessageRecord.created_at)).limit(limit).all()
            return [(_message_from_record(m), _chat_from_record(c)) for m, c in rows]

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def save_attachment(self, attachment: Attachment) -> Attachment:
        with self._get_session() as session:
            session.add(AttachmentRecord(
                id=attachment.id,
                storage_ref=attachment.storage_ref,
                file_name=attachment.file_name,
                file_type=attachment.file_type,
                file_size=attachment.file_size,
                uploaded_by=attachment.uploaded_by,
                extracted_text=attachment.extracted_text,
            ))
            session.commit()
            return attachment

    def get_attachments(self, attachment_ids: List[str]) -> List[Attachment]:
        if not attachment_ids:
            return []
        with self._get_session() as session:
            records = session.query(AttachmentRecord).filter(
                AttachmentRecord.id.in_(attachment_ids),
            ).all()
            by_id = {r.id: r for r in records}
            return [
                Attachment(
                    id=r.id,
                    storage_ref=r.storage_ref,
                    file_name=r.file_name,
                    file_type=r.file_type or "",
                    file_size=r.file_size or 0,
                    uploaded_by=r.uploaded_by,
                    extracted_text=r.extracted_text,
                )
                for r in (by_id.get(i) for i in attachment_ids)
                if r is not None
            ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_for_update(self, session: Session, message_id: str) -> Optional[MessageRecord]:
        query = session.query(MessageRecord).filter(MessageRecord.id == message_id)
        if session.get_bind().dialect.name == "postgresql":
            query = query.with_for_update()
        return query.first()

    def _next_sequence_number(self, session: Session, chat_id: str) -> int:
        current = session.query(func.max(MessageRecord.sequence_number)).filter(
            MessageRecord.chat_id == chat_id,
        ).scalar()
        return 0 if current is None else current + 1

    def _delete_chat_cascade(self, session: Session, chat_id: str) -> int:
        """Delete a chat and its messages (manual cascade)."""
        count = session.query(func.count(MessageRecord.id)).filter(
            MessageRecord.chat_id == chat_id,
        ).scalar() or 0
        session.execute(
            delete(MessageRecord).where(MessageRecord.chat_id == chat_id)
        )
        session.execute(
            delete(ChatRecord).where(ChatRecord.id == chat_id)
        )
        return count


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> datetime:
    """DuckDB may hand back naive timestamps; treat them as UTC."""
    if value is None:
        return _now_utc()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _chat_to_record(chat: Chat) -> ChatRecord:
    return ChatRecord(
        id=chat.id,
        owner=chat.owner,
        title=chat.title,
        model=chat.model or None,
        provider=chat.provider or None,
        parent_chat_id=chat.parent_chat_id,
        branch_point=chat.branch_point,
        is_shared=chat.is_shared,
        share_id=chat.share_id,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
    )


def _chat_from_record(record: ChatRecord) -> Chat:
    return Chat(
        id=record.id,
        title=record.title or "New Chat",
        owner=record.owner,
        model=record.model or "",
        provider=record.provider or "",
        parent_chat_id=record.parent_chat_id,
        branch_point=record.branch_point,
        is_shared=bool(record.is_shared),
        share_id=record.share_id,
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
    )


def _message_to_record(message: Message) -> MessageRecord:
    record = MessageRecord(
        id=message.id,
        chat_id=message.chat_id,
        role=message.role.value,
        created_at=message.created_at,
        sequence_number=message.sequence_number,
    )
    _copy_message_onto_record(message, record)
    return record


def _copy_message_onto_record(message: Message, record: MessageRecord) -> None:
    record.content = message.content
    record.updated_at = message.updated_at
    record.attachments_json = json.dumps(message.attachments) if message.attachments else None
    if message.is_assistant:
        record.versions_json = json.dumps([v.to_dict() for v in message.versions])
        record.current_version_index = message.current_version_index
    else:
        record.versions_json = None
        record.current_version_index = None
    record.is_streaming = message.is_streaming
    record.is_aborted = message.is_aborted


def _load_json_list(raw: Optional[str], message_id: str, column: str) -> list:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Corrupt %s for message %s", column, message_id)
        return []
    return data if isinstance(data, list) else []


def _message_from_record(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        chat_id=record.chat_id,
        role=MessageRole(record.role),
        content=record.content or "",
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
        sequence_number=record.sequence_number or 0,
        attachments=_load_json_list(record.attachments_json, record.id, "attachments_json"),
        versions=[
            Version.from_dict(v)
            for v in _load_json_list(record.versions_json, record.id, "versions_json")
        ],
        current_version_index=record.current_version_index,
        is_streaming=bool(record.is_streaming),
        is_aborted=bool(record.is_aborted),
    )
