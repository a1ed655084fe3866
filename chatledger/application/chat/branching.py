"""Branch/fork manager: copy a prefix of a chat into a new chat."""

import logging
from typing import Optional

from chatledger.core.metrics_logger import log_metric
from chatledger.domain.chats.models import Chat
from chatledger.domain.errors import ChatNotFoundError, ValidationError
from chatledger.domain.messages.ledger import clone_message
from chatledger.interfaces.transcripts import TranscriptStore

from .history import order_messages

logger = logging.getLogger(__name__)


class BranchManager:
    """Creates branches; never mutates the source chat."""

    def __init__(self, store: TranscriptStore):
        self._store = store

    def create_branch(
        self,
        parent_chat_id: str,
        branch_point: int,
        owner: str,
        title: Optional[str] = None,
    ) -> Chat:
        """Create a chat holding copies of the first ``branch_point`` messages.

        Assistant messages keep their whole version ledger and current index.
        A branch point past the end copies every message.

        Raises:
            ValidationError: negative branch point
            ChatNotFoundError: parent chat does not exist
        """
        if branch_point < 0:
            raise ValidationError(f"Branch point must be non-negative, got {branch_point}")

        parent = self._store.get_chat(parent_chat_id)
        if parent is None:
            raise ChatNotFoundError(f"Chat {parent_chat_id} not found")

        branch = Chat(
            title=title or f"{parent.title} (branch)",
            owner=owner,
            model=parent.model,
            provider=parent.provider,
            parent_chat_id=parent.id,
            branch_point=branch_point,
        )

        source = order_messages(self._store.list_messages(parent.id))[:branch_point]
        copies = [clone_message(message, branch.id) for message in source]
        self._store.insert_branch(branch, copies)

        logger.info(
            "Created branch %s from chat %s at %d (%d messages copied)",
            branch.id, parent.id, branch_point, len(copies),
        )
        log_metric("branch_created", owner, messages_copied=len(copies))
        return branch
