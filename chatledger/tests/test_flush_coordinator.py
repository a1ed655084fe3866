"""Tests for the stream buffer and flush coordinator.

Runs against a temp DuckDB store with a scripted completion source and a
clock that only moves when a test advances it.
"""

import asyncio

import pytest

from chatledger.application.chat.streaming import (
    ABORT_MARKER,
    ERROR_NOTICE_PREFIX,
    FlushPolicy,
    StreamFlushCoordinator,
)
from chatledger.domain.chats.models import Chat
from chatledger.domain.errors import TranscriptWriteError
from chatledger.domain.messages.ledger import AppendVersion, UpdateVersionAt
from chatledger.domain.messages.models import (
    Message,
    MessageRole,
    Turn,
    Version,
    VersionMetadata,
    VersionStatus,
)

from conftest import FakeCompletionSource, FixedClock

TURNS = [Turn(role=MessageRole.USER, content="Hi")]


def _seed(repo, versions=("",), streaming=True):
    chat = repo.insert_chat(Chat(owner="user@test.com"))
    message = Message(
        chat_id=chat.id,
        role=MessageRole.ASSISTANT,
        content=versions[-1],
        versions=[
            Version(content=c, metadata=VersionMetadata(model="m", provider="p"), status=VersionStatus.COMPLETE)
            for c in versions
        ],
        current_version_index=len(versions) - 1,
        is_streaming=streaming,
    )
    repo.insert_message(message)
    return message


def _coordinator(repo, llm, clock=None, **policy):
    defaults = dict(min_chars=1000, interval_ms=10_000, abort_check_interval=5)
    defaults.update(policy)
    return StreamFlushCoordinator(repo, llm, FlushPolicy(**defaults), clock=clock or FixedClock())


class CountingStore:
    """Wraps a repository and counts or fails append_chunk calls."""

    def __init__(self, inner, fail_times=0):
        self._inner = inner
        self.fail_times = fail_times
        self.append_calls = 0
        self.finalize_calls = []

    def append_chunk(self, message_id, target, chunk):
        self.append_calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("database is locked")
        return self._inner.append_chunk(message_id, target, chunk)

    def finalize_generation(self, message_id, version_index, status, error_details=None):
        self.finalize_calls.append((version_index, status, error_details))
        return self._inner.finalize_generation(message_id, version_index, status, error_details)

    def __getattr__(self, name):
        return getattr(self._inner, name)


@pytest.mark.asyncio
async def test_append_target_creates_exactly_one_version(repo):
    message = _seed(repo, versions=("first answer",))
    llm = FakeCompletionSource(fragments=["ab", "cd", "ef"])
    coordinator = _coordinator(repo, llm, min_chars=2)

    state = await coordinator.run(message.id, TURNS, "m", AppendVersion(VersionMetadata(model="m2", provider="p2")))

    stored = repo.get_message(message.id)
    assert len(stored.versions) == 2
    assert stored.versions[0].content == "first answer"
    assert stored.versions[1].content == "abcdef"
    assert stored.versions[1].metadata.model == "m2"
    assert stored.versions[1].status is VersionStatus.COMPLETE
    assert stored.current_version_index == 1
    assert stored.content == "abcdef"
    assert stored.is_streaming is False
    assert state.flushes == 3
    assert state.flushed_chunks == ["ab", "cd", "ef"]


@pytest.mark.asyncio
async def test_append_target_state_between_flushes(repo):
    message = _seed(repo, versions=("first answer",))
    seen = []

    def _snapshot(i):
        stored = repo.get_message(message.id)
        seen.append(([v.content for v in stored.versions], stored.current_version_index, stored.content))

    llm = FakeCompletionSource(fragments=["ab", "cd", "ef"], before_fragment=_snapshot)
    await _coordinator(repo, llm, min_chars=2).run(message.id, TURNS, "m", AppendVersion(VersionMetadata(model="m2")))

    assert seen == [
        (["first answer"], 0, "first answer"),
        (["first answer", "ab"], 1, "ab"),
        (["first answer", "abcd"], 1, "abcd"),
    ]
    assert [v.content for v in repo.get_message(message.id).versions] == ["first answer", "abcdef"]


@pytest.mark.asyncio
async def test_final_content_does_not_depend_on_chunking(repo):
    fragments = ["Str", "eam", "ing ", "is ", "chunk", "ed", " ", "any", "way", "."]
    results = {}
    for min_chars in (1, 4, 7, 1000):
        message = _seed(repo, versions=("",))
        llm = FakeCompletionSource(fragments=fragments)
        state = await _coordinator(repo, llm, min_chars=min_chars).run(message.id, TURNS, "m", UpdateVersionAt(0))
        assert "".join(state.flushed_chunks) == "".join(fragments)
        results[min_chars] = repo.get_message(message.id).content

    assert set(results.values()) == {"Streaming is chunked anyway."}


@pytest.mark.asyncio
async def test_update_target_appends_to_version(repo):
    message = _seed(repo, versions=("",))
    llm = FakeCompletionSource(fragments=["Hello", " ", "World"])

    state = await _coordinator(repo, llm).run(message.id, TURNS, "m", UpdateVersionAt(0))

    stored = repo.get_message(message.id)
    assert stored.versions[0].content == "Hello World"
    assert stored.content == "Hello World"
    assert stored.versions[0].status is VersionStatus.COMPLETE
    assert state.outcome is VersionStatus.COMPLETE
    # Everything fit in one buffer, so a single final flush
    assert state.flushes == 1
    assert llm.closed is True


@pytest.mark.asyncio
async def test_flush_on_size_threshold(repo):
    message = _seed(repo)
    llm = FakeCompletionSource(fragments=["aaaa", "bbbb", "c"])
    state = await _coordinator(repo, llm, min_chars=8).run(message.id, TURNS, "m", UpdateVersionAt(0))
    assert state.flushed_chunks == ["aaaabbbb", "c"]


@pytest.mark.asyncio
async def test_flush_on_time_threshold(repo):
    message = _seed(repo)
    clock = FixedClock()
    llm = FakeCompletionSource(
        fragments=["a", "b", "c"],
        before_fragment=lambda i: clock.advance(0.1 if i == 1 else 0),
    )
    state = await _coordinator(repo, llm, clock=clock, interval_ms=50).run(
        message.id, TURNS, "m", UpdateVersionAt(0)
    )
    assert state.flushed_chunks == ["ab", "c"]


@pytest.mark.asyncio
async def test_durable_abort_is_polled_every_n_fragments(repo):
    message = _seed(repo)

    def _abort_after_three(i):
        if i == 3:
            repo.set_aborted(message.id)

    llm = FakeCompletionSource(fragments=[str(i) for i in range(10)], before_fragment=_abort_after_three)

    state = await _coordinator(repo, llm, abort_check_interval=5).run(message.id, TURNS, "m", UpdateVersionAt(0))

    assert llm.yielded == 5
    assert llm.closed is True
    stored = repo.get_message(message.id)
    assert stored.content == "01234" + "\n\n" + ABORT_MARKER
    assert stored.versions[0].status is VersionStatus.ABORTED
    assert stored.is_aborted is True
    assert stored.is_streaming is False
    assert state.outcome is VersionStatus.ABORTED


@pytest.mark.asyncio
async def test_cancel_event_stops_on_next_fragment(repo):
    message = _seed(repo)
    llm = FakeCompletionSource(fragments=["a", "b", "c"])
    event = asyncio.Event()
    event.set()

    await _coordinator(repo, llm).run(message.id, TURNS, "m", UpdateVersionAt(0), cancel_event=event)

    assert llm.yielded == 1
    stored = repo.get_message(message.id)
    assert stored.content == "a\n\n" + ABORT_MARKER


@pytest.mark.asyncio
async def test_abort_before_any_text_writes_marker_only(repo):
    message = _seed(repo)
    repo.set_aborted(message.id)
    llm = FakeCompletionSource(fragments=["", "", "", "", "", "late"])

    await _coordinator(repo, llm).run(message.id, TURNS, "m", UpdateVersionAt(0))

    stored = repo.get_message(message.id)
    assert stored.content == ABORT_MARKER
    assert llm.yielded == 5


@pytest.mark.asyncio
async def test_upstream_error_appends_notice(repo):
    message = _seed(repo)
    llm = FakeCompletionSource(
        fragments=["Partial", " answer"],
        fail_at=2,
        error=Exception("Rate limit exceeded for this API key"),
    )

    state = await _coordinator(repo, llm).run(message.id, TURNS, "m", UpdateVersionAt(0))

    stored = repo.get_message(message.id)
    assert stored.content.startswith("Partial answer\n\n" + ERROR_NOTICE_PREFIX)
    assert "try again" in stored.content.lower()
    assert "Rate limit exceeded" not in stored.content
    version = stored.versions[0]
    assert version.status is VersionStatus.ERROR
    assert version.is_error is True
    assert version.metadata.error_details == "RateLimitError"
    assert stored.is_streaming is False
    assert state.outcome is VersionStatus.ERROR


@pytest.mark.asyncio
async def test_upstream_error_before_text_has_no_separator(repo):
    message = _seed(repo)
    llm = FakeCompletionSource(fragments=["never"], fail_at=0, error=Exception("boom"))

    await _coordinator(repo, llm).run(message.id, TURNS, "m", UpdateVersionAt(0))

    stored = repo.get_message(message.id)
    assert stored.content.startswith(ERROR_NOTICE_PREFIX)
    assert stored.versions[0].metadata.error_details == "LLMServiceError"


@pytest.mark.asyncio
async def test_max_duration_becomes_timeout_error(repo):
    message = _seed(repo)
    llm = FakeCompletionSource(fragments=["quick", "slow"], delays={1: 5.0})
    coordinator = StreamFlushCoordinator(
        repo, llm, FlushPolicy(min_chars=1000, interval_ms=10_000, max_duration_seconds=0.05)
    )

    state = await coordinator.run(message.id, TURNS, "m", UpdateVersionAt(0))

    stored = repo.get_message(message.id)
    assert stored.content.startswith("quick\n\n" + ERROR_NOTICE_PREFIX)
    assert "timed out" in stored.content
    assert stored.versions[0].metadata.error_details == "LLMTimeoutError"
    assert state.outcome is VersionStatus.ERROR


@pytest.mark.asyncio
async def test_failed_flush_is_retried(repo):
    message = _seed(repo)
    store = CountingStore(repo, fail_times=1)
    llm = FakeCompletionSource(fragments=["ok"])
    coordinator = StreamFlushCoordinator(store, llm, FlushPolicy(min_chars=1000, flush_retries=1), clock=FixedClock())

    await coordinator.run(message.id, TURNS, "m", UpdateVersionAt(0))

    assert store.append_calls == 2
    assert repo.get_message(message.id).content == "ok"


@pytest.mark.asyncio
async def test_persistent_flush_failure_raises_and_finalizes(repo):
    message = _seed(repo)
    store = CountingStore(repo, fail_times=100)
    llm = FakeCompletionSource(fragments=["a" * 10, "b"])
    coordinator = StreamFlushCoordinator(store, llm, FlushPolicy(min_chars=5, flush_retries=1), clock=FixedClock())

    with pytest.raises(TranscriptWriteError):
        await coordinator.run(message.id, TURNS, "m", UpdateVersionAt(0))

    stored = repo.get_message(message.id)
    assert stored.is_streaming is False
    assert stored.versions[0].status is VersionStatus.ERROR
    assert store.finalize_calls[-1][1] is VersionStatus.ERROR
    assert llm.closed is True


@pytest.mark.asyncio
async def test_out_of_range_target_writes_nothing(repo):
    message = _seed(repo, versions=("kept",), streaming=False)
    llm = FakeCompletionSource(fragments=["x", "y"])

    state = await _coordinator(repo, llm).run(message.id, TURNS, "m", UpdateVersionAt(7))

    stored = repo.get_message(message.id)
    assert stored.versions[0].content == "kept"
    assert len(stored.versions) == 1
    assert state.message_gone is True


@pytest.mark.asyncio
async def test_deleted_message_stops_streaming(repo):
    message = _seed(repo)

    def _delete(i):
        if i == 1:
            repo.delete_messages([message.id])

    llm = FakeCompletionSource(fragments=["aa", "bb", "cc", "dd"], before_fragment=_delete)
    state = await _coordinator(repo, llm, min_chars=2).run(message.id, TURNS, "m", UpdateVersionAt(0))

    assert state.message_gone is True
    assert llm.yielded == 2
    assert repo.get_message(message.id) is None


@pytest.mark.asyncio
async def test_turns_are_sent_in_order(repo):
    message = _seed(repo)
    llm = FakeCompletionSource(fragments=["ok"])
    turns = [
        Turn(role=MessageRole.USER, content="one"),
        Turn(role=MessageRole.ASSISTANT, content="two"),
        Turn(role=MessageRole.USER, content="three"),
    ]
    await _coordinator(repo, llm).run(message.id, turns, "m", UpdateVersionAt(0), enable_web_search=True)

    call = llm.stream_calls[0]
    assert call["messages"] == [
        {"role": "user", "content": "one"},
        {"role": "assistant", "content": "two"},
        {"role": "user", "content": "three"},
    ]
    assert call["enable_web_search"] is True
