"""History reconstruction: which turns are sent to the completion source.

Pure functions over message lists. Ordering is by ``(created_at,
sequence_number)`` so messages created in the same instant keep their
insertion order. Assistant messages contribute the content of their current
version.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List

from chatledger.domain.errors import MessageNotFoundError, RetryContextError, ValidationError
from chatledger.domain.messages.models import Message, MessageRole, Turn

logger = logging.getLogger(__name__)


@dataclass
class EditPlan:
    """Outcome of planning an edit-and-regenerate."""
    turns: List[Turn]
    edited: Message
    to_delete: List[Message]


def order_messages(messages: Iterable[Message]) -> List[Message]:
    return sorted(messages, key=lambda m: m.sort_key())


def to_turn(message: Message) -> Turn:
    return Turn(role=message.role, content=message.display_content())


def _index_of(ordered: List[Message], message_id: str) -> int:
    for i, message in enumerate(ordered):
        if message.id == message_id:
            return i
    raise MessageNotFoundError(f"Message {message_id} is not part of this chat")


def for_fresh_send(messages: Iterable[Message], new_user_content: str) -> List[Turn]:
    """Every existing message in order, then the new user turn."""
    turns = [to_turn(m) for m in order_messages(messages)]
    turns.append(Turn(role=MessageRole.USER, content=new_user_content))
    return turns


def for_retry(messages: Iterable[Message], assistant_message_id: str) -> List[Turn]:
    """Context for regenerating an assistant message.

    Walks back from the assistant message to the nearest user message and
    returns every message up to and including it.

    Raises:
        RetryContextError: no user message precedes the assistant message
    """
    ordered = order_messages(messages)
    position = _index_of(ordered, assistant_message_id)
    if ordered[position].role is not MessageRole.ASSISTANT:
        raise ValidationError("Can only retry assistant messages")

    for i in range(position - 1, -1, -1):
        if ordered[i].role is MessageRole.USER:
            return [to_turn(m) for m in ordered[: i + 1]]

    logger.warning("No user message precedes assistant message %s; refusing retry", assistant_message_id)
    raise RetryContextError(
        "Cannot retry: no user message precedes this assistant message",
        code="no_user_turn",
    )


def for_edit(messages: Iterable[Message], message_id: str, new_content: str) -> EditPlan:
    """Context for regenerating after a user message is edited.

    The context ends at the edited message, whose new content replaces the
    old. Everything after it is returned in ``to_delete``; callers delete
    those messages from the store.
    """
    ordered = order_messages(messages)
    position = _index_of(ordered, message_id)
    edited = ordered[position]
    if edited.role is not MessageRole.USER:
        raise ValidationError("Only user messages can be edited")

    turns = [to_turn(m) for m in ordered[:position]]
    turns.append(Turn(role=MessageRole.USER, content=new_content))
    return EditPlan(turns=turns, edited=edited, to_delete=ordered[position + 1:])
