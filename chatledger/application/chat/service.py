"""Chat service - core business logic for transcript operations."""

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from chatledger.core.log_sanitizer import sanitize_for_logging
from chatledger.core.metrics_logger import log_metric
from chatledger.domain.chats.models import Attachment, Chat
from chatledger.domain.errors import (
    AuthorizationError,
    ChatNotFoundError,
    MessageNotFoundError,
    ValidationError,
)
from chatledger.domain.messages import ledger
from chatledger.domain.messages.ledger import FlushTarget, UpdateVersionAt
from chatledger.domain.messages.models import (
    Message,
    MessageRole,
    Turn,
    Version,
    VersionMetadata,
)
from chatledger.interfaces.llm import CompletionSource
from chatledger.interfaces.transcripts import TranscriptStore
from chatledger.modules.config import ConfigManager

from . import history
from .branching import BranchManager
from .streaming import FlushPolicy, StreamFlushCoordinator, StreamState
from .task_registry import GenerationTaskRegistry

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Generate a short, descriptive title (max 6 words) for a chat that starts with this message. "
    "Return only the title, no quotes or extra text."
)
DEFAULT_TITLE = "New Chat"


def fallback_title(content: str) -> str:
    """Title derived from the first message when the model cannot provide one."""
    content = content.strip()
    if len(content) > 50:
        return content[:47] + "..."
    return content or DEFAULT_TITLE


class TranscriptChatService:
    """
    Orchestrates chats, messages and their streamed generations.
    Transport-agnostic, testable business logic.

    Methods taking ``user_email`` verify that the user owns the chat involved
    and raise ``AuthorizationError`` otherwise. Passing ``None`` skips the
    check, for internal callers that already did it.
    """

    def __init__(
        self,
        store: TranscriptStore,
        llm: CompletionSource,
        config_manager: Optional[ConfigManager] = None,
        task_registry: Optional[GenerationTaskRegistry] = None,
        coordinator: Optional[StreamFlushCoordinator] = None,
    ):
        self.store = store
        self.llm = llm
        self.config_manager = config_manager
        self.tasks = task_registry or GenerationTaskRegistry()
        if coordinator is None:
            policy = (
                FlushPolicy.from_settings(config_manager.app_settings)
                if config_manager is not None
                else FlushPolicy()
            )
            coordinator = StreamFlushCoordinator(store, llm, policy)
        self.coordinator = coordinator
        self.branches = BranchManager(store)
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Ownership helpers
    # ------------------------------------------------------------------

    def _owned_chat(self, chat_id: str, user_email: Optional[str]) -> Chat:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            raise ChatNotFoundError(f"Chat {chat_id} not found")
        if user_email is not None and not chat.is_owned_by(user_email):
            logger.warning(
                "User %s denied access to chat %s",
                sanitize_for_logging(user_email), sanitize_for_logging(chat_id),
            )
            raise AuthorizationError("Chat not found or unauthorized")
        return chat

    def _owned_message(self, message_id: str, user_email: Optional[str]) -> Tuple[Message, Chat]:
        message = self.store.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} not found")
        chat = self._owned_chat(message.chat_id, user_email)
        return message, chat

    def _settings(self):
        return self.config_manager.app_settings if self.config_manager is not None else None

    def _resolve_model(self, model: Optional[str]) -> str:
        if model:
            return model
        settings = self._settings()
        if settings is not None and settings.default_model:
            return settings.default_model
        if self.config_manager is not None and self.config_manager.llm_config.models:
            return next(iter(self.config_manager.llm_config.models))
        raise ValidationError("No model selected and no default model configured")

    def _initial_metadata(self, model: str, enable_web_search: bool) -> VersionMetadata:
        return VersionMetadata(
            model=model,
            provider=self.llm.get_provider(model),
            enable_web_search=True if enable_web_search else None,
        )

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def create_chat(self, user_email: str, title: Optional[str] = None, model: Optional[str] = None) -> Chat:
        model_name = model or ""
        chat = Chat(
            title=title or DEFAULT_TITLE,
            owner=user_email,
            model=model_name,
            provider=self.llm.get_provider(model_name) if model_name else "",
        )
        self.store.insert_chat(chat)
        logger.info("Created chat %s for %s", chat.id, sanitize_for_logging(user_email))
        return chat

    def list_chats(self, user_email: str, limit: int = 50, offset: int = 0) -> List[Chat]:
        return self.store.list_chats(user_email, limit=limit, offset=offset)

    def get_chat(self, chat_id: str, user_email: Optional[str]) -> Tuple[Chat, List[Message]]:
        """The chat and its messages in conversation order."""
        chat = self._owned_chat(chat_id, user_email)
        return chat, self.store.list_messages(chat.id)

    def update_chat_title(self, chat_id: str, title: str, user_email: Optional[str]) -> Chat:
        title = title.strip()
        if not title:
            raise ValidationError("Title must not be empty")
        chat = self._owned_chat(chat_id, user_email)
        self.store.update_chat_title(chat.id, title)
        chat.title = title
        return chat

    def delete_chat(self, chat_id: str, user_email: Optional[str]) -> int:
        """Delete a chat with all its messages, stopping any generation in it."""
        chat = self._owned_chat(chat_id, user_email)
        for message in self.store.list_messages(chat.id):
            self.tasks.signal_abort(message.id)
        return self.store.delete_chat(chat.id)

    def search_messages(
        self,
        user_email: str,
        query: str,
        chat_id: Optional[str] = None,
        role: Optional[MessageRole] = None,
        limit: int = 20,
    ) -> List[Tuple[Message, Chat]]:
        if not query.strip():
            return []
        if chat_id is not None:
            self._owned_chat(chat_id, user_email)
        return self.store.search_messages(user_email, query.strip(), chat_id=chat_id, role=role, limit=limit)

    def get_message(self, message_id: str, user_email: Optional[str]) -> Message:
        message, _chat = self._owned_message(message_id, user_email)
        return message

    def register_attachment(self, attachment: Attachment) -> Attachment:
        """Record metadata for a file already placed in external storage."""
        if not attachment.storage_ref or not attachment.file_name:
            raise ValidationError("Attachment needs a storage reference and a file name")
        self.store.save_attachment(attachment)
        log_metric("file_upload", attachment.uploaded_by, file_size=attachment.file_size, content_type=attachment.file_type)
        return attachment

    def _check_attachments(self, attachment_ids: List[str], user_email: str) -> None:
        found = self.store.get_attachments(attachment_ids)
        if len(found) != len(set(attachment_ids)):
            raise ValidationError("One or more attachments do not exist")
        if any(a.uploaded_by != user_email for a in found):
            raise AuthorizationError("Attachment not owned by user")

    # ------------------------------------------------------------------
    # Generation entry points
    # ------------------------------------------------------------------

    def create_empty_assistant_message(self, chat_id: str, metadata: Optional[VersionMetadata] = None) -> str:
        """Insert an assistant placeholder with one empty, streaming version."""
        self._owned_chat(chat_id, None)
        placeholder = Message(
            chat_id=chat_id,
            role=MessageRole.ASSISTANT,
            content="",
            versions=[Version(content="", metadata=metadata or VersionMetadata())],
            current_version_index=0,
            is_streaming=True,
        )
        self.store.insert_message(placeholder)
        return placeholder.id

    async def stream_generation(
        self,
        turns: List[Turn],
        message_id: str,
        model: str,
        target_version_index: Optional[int] = None,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
    ) -> None:
        """Start generating into a message without waiting for the result.

        ``target_version_index`` None writes into the current version,
        ``len(versions)`` appends a new one and any other in-range index
        updates that version. An out-of-range index is logged and ignored.
        Progress is observed by reading the message.
        """
        message, _chat = self._owned_message(message_id, user_email)
        if not message.is_assistant:
            raise ValidationError("Can only generate into assistant messages")

        if await self.tasks.stop(message.id):
            message, _chat = self._owned_message(message_id, user_email)

        target = ledger.resolve_target(
            message,
            target_version_index,
            initial_metadata=self._initial_metadata(model, enable_web_search),
        )
        if target is None:
            return
        await self._launch(message.id, target, turns, model, user_email, enable_web_search)

    async def run_generation(
        self,
        turns: List[Turn],
        message_id: str,
        model: str,
        target_version_index: Optional[int] = None,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
    ) -> Optional[StreamState]:
        """Like ``stream_generation`` but waits for the generation to finish."""
        await self.stream_generation(
            turns, message_id, model,
            target_version_index=target_version_index,
            user_email=user_email,
            enable_web_search=enable_web_search,
        )
        entry = self.tasks.get(message_id)
        if entry is None:
            return None
        return await entry.task

    async def _launch(
        self,
        message_id: str,
        target: FlushTarget,
        turns: List[Turn],
        model: str,
        user_email: Optional[str],
        enable_web_search: bool,
    ) -> None:
        await self.tasks.stop(message_id)
        updated = self.store.mutate_message(message_id, lambda m: ledger.begin_attempt(m, target))
        if updated is None:
            raise MessageNotFoundError(f"Message {message_id} not found")

        self.tasks.start(
            message_id,
            lambda cancel_event: self.coordinator.run(
                message_id,
                turns,
                model,
                target,
                user_email=user_email,
                enable_web_search=enable_web_search,
                cancel_event=cancel_event,
            ),
        )

    async def send_message(
        self,
        user_email: str,
        content: str,
        model: Optional[str] = None,
        chat_id: Optional[str] = None,
        attachments: Optional[List[str]] = None,
        enable_web_search: bool = False,
    ) -> Dict[str, str]:
        """Add a user message and start streaming the assistant reply.

        Creates the chat on first send. The first user message of a chat also
        triggers title generation.
        """
        attachments = list(attachments or [])
        if not content.strip() and not attachments:
            raise ValidationError("Message must have content or attachments")
        model_name = self._resolve_model(model)
        if attachments:
            self._check_attachments(attachments, user_email)

        if chat_id:
            chat = self._owned_chat(chat_id, user_email)
        else:
            chat = self.create_chat(user_email, model=model_name)

        existing = self.store.list_messages(chat.id)
        turns = history.for_fresh_send(existing, content)

        user_message = Message(
            chat_id=chat.id,
            role=MessageRole.USER,
            content=content,
            attachments=attachments,
        )
        self.store.insert_message(user_message)

        if not any(m.role is MessageRole.USER for m in existing):
            self._schedule_title(chat.id, content, user_email)

        assistant_id = self.create_empty_assistant_message(
            chat.id, self._initial_metadata(model_name, enable_web_search)
        )
        await self._launch(assistant_id, UpdateVersionAt(0), turns, model_name, user_email, enable_web_search)

        log_metric("message_sent", user_email, model=model_name, history_length=len(turns))
        return {
            "chat_id": chat.id,
            "user_message_id": user_message.id,
            "assistant_message_id": assistant_id,
        }

    async def retry(
        self,
        original_message_id: str,
        chat_id: str,
        model: str,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
    ) -> str:
        """Regenerate an assistant message as a new version.

        The context is rebuilt up to the nearest preceding user message; when
        there is none the retry is refused before anything is written.
        """
        message, chat = self._owned_message(original_message_id, user_email)
        if message.chat_id != chat_id:
            raise ValidationError("Chat ID mismatch")
        if not message.is_assistant:
            raise ValidationError("Can only retry assistant messages")

        turns = history.for_retry(self.store.list_messages(chat.id), message.id)
        await self.tasks.stop(message.id)
        metadata = self._initial_metadata(model, enable_web_search)
        metadata.tokens = 0
        metadata.cost = 0.0

        appended: Dict[str, int] = {}

        def _append(m: Message) -> None:
            appended["index"] = ledger.append_version(m, "", metadata)

        if self.store.mutate_message(message.id, _append) is None:
            raise MessageNotFoundError(f"Message {original_message_id} not found")

        logger.info("Retrying message %s as version %d", message.id, appended["index"])
        await self._launch(message.id, UpdateVersionAt(appended["index"]), turns, model, user_email, enable_web_search)
        log_metric("retry", user_email, model=model, version=appended["index"])
        return message.id

    async def edit_and_regenerate(
        self,
        message_id: str,
        new_content: str,
        chat_id: str,
        model: str,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
    ) -> str:
        """Replace a user message's content and regenerate from there.

        Every message after the edited one is deleted. Returns the id of the
        new assistant placeholder.
        """
        if not new_content.strip():
            raise ValidationError("Edited message must not be empty")
        message, chat = self._owned_message(message_id, user_email)
        if message.chat_id != chat_id:
            raise ValidationError("Chat ID mismatch")

        plan = history.for_edit(self.store.list_messages(chat.id), message.id, new_content)

        def _edit(m: Message) -> None:
            m.content = new_content
            m.touch()

        self.store.mutate_message(message.id, _edit)
        for trailing in plan.to_delete:
            await self.tasks.stop(trailing.id)
        removed = self.store.delete_messages([m.id for m in plan.to_delete])
        logger.info("Edited message %s; removed %d later messages", message.id, removed)

        placeholder_id = self.create_empty_assistant_message(
            chat.id, self._initial_metadata(model, enable_web_search)
        )
        await self._launch(placeholder_id, UpdateVersionAt(0), plan.turns, model, user_email, enable_web_search)
        return placeholder_id

    def switch_version(self, message_id: str, target_index: int, user_email: Optional[str] = None) -> Message:
        """Display another version of an assistant message."""
        message, _chat = self._owned_message(message_id, user_email)
        if not message.is_assistant:
            raise ValidationError("Only assistant messages have versions")
        updated = self.store.mutate_message(message.id, lambda m: ledger.switch_current(m, target_index))
        if updated is None:
            raise MessageNotFoundError(f"Message {message_id} not found")
        return updated

    def mark_aborted(self, message_id: str, user_email: Optional[str] = None) -> None:
        """Request that the generation for a message stop."""
        message, _chat = self._owned_message(message_id, user_email)
        self.store.set_aborted(message.id)
        signalled = self.tasks.signal_abort(message.id)
        logger.info("Abort requested for message %s (local task: %s)", message.id, signalled)

    def create_branch(
        self,
        parent_chat_id: str,
        branch_point: int,
        title: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> str:
        chat = self._owned_chat(parent_chat_id, user_email)
        branch = self.branches.create_branch(chat.id, branch_point, owner=chat.owner, title=title)
        return branch.id

    # ------------------------------------------------------------------
    # Title generation
    # ------------------------------------------------------------------

    def _schedule_title(self, chat_id: str, content: str, user_email: Optional[str]) -> None:
        settings = self._settings()
        if settings is not None and not settings.title_generation_enabled:
            self.store.update_chat_title(chat_id, fallback_title(content))
            return
        task = asyncio.create_task(self.generate_title(chat_id, content, user_email), name=f"title-{chat_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def generate_title(self, chat_id: str, content: str, user_email: Optional[str] = None) -> str:
        """Ask the model for a short title; fall back to a truncation of ``content``."""
        settings = self._settings()
        title_model = (settings.title_model if settings is not None else None) or self._safe_default_model()
        title = None
        if title_model:
            try:
                response = await self.llm.call_plain(
                    title_model,
                    [
                        {"role": "system", "content": TITLE_PROMPT},
                        {"role": "user", "content": content},
                    ],
                    temperature=0.7,
                    max_tokens=50,
                    user_email=user_email,
                )
                title = (response.content or "").strip().strip('"').strip() or DEFAULT_TITLE
            except Exception as exc:
                logger.warning("Title generation failed for chat %s: %s", chat_id, exc)
        if title is None:
            title = fallback_title(content)
        self.store.update_chat_title(chat_id, title)
        return title

    def _safe_default_model(self) -> Optional[str]:
        try:
            return self._resolve_model(None)
        except ValidationError:
            return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for running generations and title tasks."""
        await self.tasks.wait_idle(timeout=timeout)
        if self._background:
            await asyncio.wait(list(self._background), timeout=timeout)

    async def shutdown(self) -> None:
        await self.tasks.shutdown()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

