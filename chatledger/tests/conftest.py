import asyncio
import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

# Ensure the project root is on sys.path for absolute imports like 'chatledger.*'
project_root = Path(__file__).resolve().parents[2]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from chatledger.modules.chat_history import TranscriptDatabase  # noqa: E402
from chatledger.modules.llm.models import LLMResponse  # noqa: E402


class FakeCompletionSource:
    """Scripted completion source.

    Yields ``fragments`` in order. ``fail_at`` raises ``error`` instead of
    yielding the fragment at that position (``len(fragments)`` fails after the
    last one). ``before_fragment(i)`` runs just before fragment ``i`` is
    handed out, which lets a test change the store mid-stream.
    """

    def __init__(
        self,
        fragments: Optional[List[str]] = None,
        fail_at: Optional[int] = None,
        error: Optional[Exception] = None,
        delays: Optional[dict] = None,
        before_fragment: Optional[Callable[[int], None]] = None,
        title: object = "Generated Title",
        provider: str = "openai",
    ):
        self.fragments = list(fragments or [])
        self.fail_at = fail_at
        self.error = error or RuntimeError("upstream failure")
        self.delays = delays or {}
        self.before_fragment = before_fragment
        self.title = title
        self.provider = provider
        self.yielded = 0
        self.closed = False
        self.stream_calls: List[dict] = []
        self.plain_calls: List[dict] = []

    def get_provider(self, model_name: str) -> str:
        return self.provider

    async def call_plain(
        self,
        model_name,
        messages,
        temperature=None,
        max_tokens=None,
        user_email=None,
        enable_web_search=False,
    ):
        self.plain_calls.append({
            "model": model_name,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if isinstance(self.title, Exception):
            raise self.title
        return LLMResponse(content=self.title, model_used=model_name)

    async def stream_plain(
        self,
        model_name,
        messages,
        temperature=None,
        max_tokens=None,
        user_email=None,
        enable_web_search=False,
    ):
        self.stream_calls.append({
            "model": model_name,
            "messages": messages,
            "enable_web_search": enable_web_search,
        })
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_at == i:
                    raise self.error
                if self.before_fragment is not None:
                    self.before_fragment(i)
                if i in self.delays:
                    await asyncio.sleep(self.delays[i])
                self.yielded += 1
                yield fragment
            if self.fail_at is not None and self.fail_at >= len(self.fragments):
                raise self.error
        finally:
            self.closed = True


class FixedClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db_path(tmp_path):
    """Provide a temporary DuckDB file path."""
    return str(tmp_path / "test_transcripts.db")


@pytest.fixture
def database(db_path):
    """Open a temp DuckDB with the transcript schema."""
    db = TranscriptDatabase(f"duckdb:///{db_path}")
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def repo(database):
    """Create a TranscriptRepository backed by a temp DuckDB."""
    return database.repository()


@pytest.fixture
def fake_llm():
    return FakeCompletionSource(fragments=["Hello", " there", "!"])


@pytest.fixture
def make_service(repo):
    """Build a TranscriptChatService over the temp repository and a given fake."""
    from chatledger.application.chat.service import TranscriptChatService
    from chatledger.application.chat.streaming import FlushPolicy, StreamFlushCoordinator

    def _make(llm, policy=None, clock=None, config_manager=None):
        coordinator = StreamFlushCoordinator(
            repo,
            llm,
            policy or FlushPolicy(min_chars=1000, interval_ms=10_000, abort_check_interval=5),
            clock=clock or FixedClock(),
        )
        return TranscriptChatService(store=repo, llm=llm, config_manager=config_manager, coordinator=coordinator)

    return _make
