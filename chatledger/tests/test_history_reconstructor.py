"""Tests for rebuilding the turn list sent to the completion source."""

from datetime import datetime, timedelta, timezone

import pytest

from chatledger.application.chat import history
from chatledger.domain.errors import MessageNotFoundError, RetryContextError, ValidationError
from chatledger.domain.messages.models import Message, MessageRole, Turn, Version

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _msg(role, content, seconds, seq=0, versions=None, current=None, msg_id=None):
    message = Message(
        chat_id="chat-1",
        role=role,
        content=content,
        created_at=T0 + timedelta(seconds=seconds),
        sequence_number=seq,
    )
    if msg_id:
        message.id = msg_id
    if versions is not None:
        message.versions = [Version(content=v) for v in versions]
        message.current_version_index = len(versions) - 1 if current is None else current
        message.content = message.versions[message.current_version_index].content
    return message


USER = MessageRole.USER
ASSISTANT = MessageRole.ASSISTANT


class TestOrdering:
    def test_orders_by_time_then_sequence(self):
        a = _msg(USER, "a", 0, seq=1)
        b = _msg(ASSISTANT, "b", 0, seq=2, versions=["b"])
        c = _msg(USER, "c", 5, seq=0)
        assert [m.content for m in history.order_messages([c, b, a])] == ["a", "b", "c"]

    def test_assistant_turn_uses_current_version(self):
        message = _msg(ASSISTANT, "", 0, versions=["first", "second"], current=0)
        assert history.to_turn(message) == Turn(role=ASSISTANT, content="first")


class TestFreshSend:
    def test_appends_new_user_turn(self):
        messages = [
            _msg(USER, "hi", 0),
            _msg(ASSISTANT, "", 1, versions=["hello"]),
        ]
        turns = history.for_fresh_send(messages, "how are you?")
        assert [t.to_dict() for t in turns] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "how are you?"},
        ]

    def test_empty_chat(self):
        assert history.for_fresh_send([], "first") == [Turn(role=USER, content="first")]


class TestRetry:
    def test_context_ends_at_nearest_user_message(self):
        messages = [
            _msg(USER, "q1", 0),
            _msg(ASSISTANT, "", 1, versions=["a1"]),
            _msg(USER, "q2", 2),
            _msg(ASSISTANT, "", 3, versions=["a2"], msg_id="target"),
            _msg(USER, "q3", 4),
        ]
        turns = history.for_retry(messages, "target")
        assert [t.content for t in turns] == ["q1", "a1", "q2"]

    def test_skips_system_messages_walking_back(self):
        messages = [
            _msg(USER, "q1", 0),
            _msg(MessageRole.SYSTEM, "note", 1),
            _msg(ASSISTANT, "", 2, versions=["a1"], msg_id="target"),
        ]
        turns = history.for_retry(messages, "target")
        assert [t.content for t in turns] == ["q1"]

    def test_no_preceding_user_message(self):
        messages = [
            _msg(MessageRole.SYSTEM, "intro", 0),
            _msg(ASSISTANT, "", 1, versions=["greeting"], msg_id="target"),
        ]
        with pytest.raises(RetryContextError) as exc_info:
            history.for_retry(messages, "target")
        assert exc_info.value.code == "no_user_turn"

    def test_unknown_message(self):
        with pytest.raises(MessageNotFoundError):
            history.for_retry([_msg(USER, "q", 0)], "missing")

    def test_user_message_cannot_be_retried(self):
        messages = [_msg(USER, "q", 0, msg_id="u1")]
        with pytest.raises(ValidationError):
            history.for_retry(messages, "u1")


class TestEdit:
    def test_replaces_content_and_collects_trailing(self):
        messages = [
            _msg(USER, "q1", 0),
            _msg(ASSISTANT, "", 1, versions=["a1"]),
            _msg(USER, "q2", 2, msg_id="edit-me"),
            _msg(ASSISTANT, "", 3, versions=["a2"], msg_id="after-1"),
            _msg(USER, "q3", 4, msg_id="after-2"),
        ]
        plan = history.for_edit(messages, "edit-me", "q2 edited")

        assert [t.content for t in plan.turns] == ["q1", "a1", "q2 edited"]
        assert plan.turns[-1].role is USER
        assert plan.edited.id == "edit-me"
        assert [m.id for m in plan.to_delete] == ["after-1", "after-2"]

    def test_editing_last_message_deletes_nothing(self):
        messages = [_msg(USER, "q1", 0, msg_id="only")]
        plan = history.for_edit(messages, "only", "new")
        assert plan.to_delete == []
        assert plan.turns == [Turn(role=USER, content="new")]

    def test_assistant_message_cannot_be_edited(self):
        messages = [_msg(ASSISTANT, "", 0, versions=["a"], msg_id="a1")]
        with pytest.raises(ValidationError):
            history.for_edit(messages, "a1", "x")
