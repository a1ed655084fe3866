"""Stream buffer and flush coordinator.

Turns a live token stream from the completion source into a bounded number of
durable writes against one assistant message. Fragments are buffered in
memory and flushed when the buffer reaches ``min_chars`` or when
``interval_ms`` passed since the last flush, whichever comes first. Every
``abort_check_interval`` fragments the durable ``is_aborted`` flag on the
message is read; an in-process cancel event is checked on every fragment.

Whatever happens upstream, the message is left non-streaming with readable
text in the generated version:

- normal end of stream: final flush, version sealed ``complete``
- abort: final flush plus the stop marker, version sealed ``aborted``
- completion source error: final flush plus an error notice, version sealed
  ``error``

Only a transcript write that keeps failing escapes as ``TranscriptWriteError``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional

from chatledger.application.chat.utilities.error_handler import classify_llm_error
from chatledger.core.metrics_logger import log_metric
from chatledger.domain.errors import LLMTimeoutError, TranscriptWriteError
from chatledger.domain.messages.ledger import AppendVersion, FlushTarget, UpdateVersionAt
from chatledger.domain.messages.models import Turn, VersionStatus, turns_to_llm_messages
from chatledger.interfaces.llm import CompletionSource
from chatledger.interfaces.transcripts import TranscriptStore

logger = logging.getLogger(__name__)

ABORT_MARKER = "[Response stopped by user]"
ERROR_NOTICE_PREFIX = "I'm sorry, I ran into an error."
NOTICE_SEPARATOR = "\n\n"


@dataclass
class FlushPolicy:
    """Tuning knobs for the flush coordinator."""
    min_chars: int = 50
    interval_ms: int = 50
    abort_check_interval: int = 5
    max_duration_seconds: Optional[float] = 300.0
    flush_retries: int = 1

    @classmethod
    def from_settings(cls, settings) -> "FlushPolicy":
        return cls(
            min_chars=settings.stream_flush_min_chars,
            interval_ms=settings.stream_flush_interval_ms,
            abort_check_interval=settings.stream_abort_check_interval,
            max_duration_seconds=settings.stream_max_duration_seconds,
            flush_retries=settings.stream_flush_retries,
        )


@dataclass
class StreamState:
    """Mutable state of one generation attempt, owned by a single task."""
    message_id: str
    target: FlushTarget
    started_at: float
    last_flush_at: float
    buffer: str = ""
    fragments: int = 0
    flushes: int = 0
    chars_written: int = 0
    version_index: Optional[int] = None
    outcome: Optional[VersionStatus] = None
    error_details: Optional[str] = None
    message_gone: bool = False
    flushed_chunks: List[str] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.target, UpdateVersionAt):
            self.version_index = self.target.index

    @property
    def has_text(self) -> bool:
        return bool(self.chars_written or self.buffer)


class StreamFlushCoordinator:
    """Streams one completion into one message version.

    A coordinator instance holds no per-stream state and may be shared; every
    call to ``run`` gets its own ``StreamState``.
    """

    def __init__(
        self,
        store: TranscriptStore,
        completion_source: CompletionSource,
        policy: Optional[FlushPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._source = completion_source
        self._policy = policy or FlushPolicy()
        self._clock = clock

    @property
    def policy(self) -> FlushPolicy:
        return self._policy

    async def run(
        self,
        message_id: str,
        turns: List[Turn],
        model: str,
        target: FlushTarget,
        user_email: Optional[str] = None,
        enable_web_search: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StreamState:
        """Consume the completion stream into ``target`` until it ends, aborts or fails."""
        now = self._clock()
        state = StreamState(message_id=message_id, target=target, started_at=now, last_flush_at=now)
        logger.info(
            "Starting generation for message %s: model=%s turns=%d target=%s",
            message_id, model, len(turns), type(target).__name__,
        )

        stream = self._source.stream_plain(
            model,
            turns_to_llm_messages(turns),
            user_email=user_email,
            enable_web_search=enable_web_search,
        )
        try:
            await self._consume(state, stream, cancel_event)
            if state.outcome is None and not state.message_gone:
                await self._flush(state)
                state.outcome = VersionStatus.COMPLETE
        except TranscriptWriteError:
            await self._finalize_best_effort(state, VersionStatus.ERROR, "TranscriptWriteError")
            raise
        except asyncio.CancelledError:
            logger.info("Generation task for message %s was cancelled", message_id)
            await self._finalize_best_effort(state, VersionStatus.ABORTED, marker=ABORT_MARKER)
            raise
        except Exception as exc:
            try:
                await self._handle_upstream_error(state, exc)
            except TranscriptWriteError:
                await self._finalize_best_effort(state, VersionStatus.ERROR, "TranscriptWriteError")
                raise
        finally:
            await _close_stream(stream)

        if state.message_gone:
            logger.warning("Message %s disappeared during generation; stopped streaming", message_id)
        else:
            self._finalize(state)

        log_metric(
            "generation_complete",
            user_email,
            model=model,
            outcome=state.outcome.value if state.outcome else "dropped",
            fragments=state.fragments,
            flushes=state.flushes,
            chars=state.chars_written,
            duration_ms=int((self._clock() - state.started_at) * 1000),
        )
        return state

    async def _consume(
        self,
        state: StreamState,
        stream: AsyncIterator[str],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        while True:
            try:
                fragment = await self._next_fragment(state, stream)
            except StopAsyncIteration:
                return

            state.fragments += 1
            state.buffer += fragment

            if self._should_flush(state):
                await self._flush(state)
                if state.message_gone:
                    return

            if await self._abort_requested(state, cancel_event):
                logger.info(
                    "Abort observed for message %s after %d fragments",
                    state.message_id, state.fragments,
                )
                state.buffer += self._notice(state, ABORT_MARKER)
                await self._flush(state)
                state.outcome = VersionStatus.ABORTED
                return

    async def _next_fragment(self, state: StreamState, stream: AsyncIterator[str]) -> str:
        limit = self._policy.max_duration_seconds
        if limit is None:
            return await stream.__anext__()
        remaining = limit - (self._clock() - state.started_at)
        if remaining <= 0:
            raise LLMTimeoutError(f"Generation exceeded {limit} seconds")
        try:
            return await asyncio.wait_for(stream.__anext__(), timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise LLMTimeoutError(f"Generation exceeded {limit} seconds") from exc

    def _should_flush(self, state: StreamState) -> bool:
        if not state.buffer:
            return False
        if len(state.buffer) >= self._policy.min_chars:
            return True
        elapsed_ms = (self._clock() - state.last_flush_at) * 1000
        return elapsed_ms >= self._policy.interval_ms

    async def _abort_requested(self, state: StreamState, cancel_event: Optional[asyncio.Event]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        if state.fragments % self._policy.abort_check_interval != 0:
            return False
        return self._store.is_message_aborted(state.message_id)

    async def _flush(self, state: StreamState) -> None:
        """Commit the buffer as one atomic append, retrying a failed write."""
        if not state.buffer:
            return
        chunk = state.buffer
        written = await self._write_chunk(state, chunk)
        state.buffer = ""
        state.last_flush_at = self._clock()
        if written is None:
            state.message_gone = True
            return
        state.flushes += 1
        state.chars_written += len(chunk)
        state.flushed_chunks.append(chunk)
        if isinstance(state.target, AppendVersion):
            # Later flushes of this attempt go to the version just created
            state.target = UpdateVersionAt(written)
        state.version_index = written

    async def _write_chunk(self, state: StreamState, chunk: str) -> Optional[int]:
        attempts = self._policy.flush_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._store.append_chunk(state.message_id, state.target, chunk)
            except Exception as exc:
                if attempt >= attempts:
                    logger.error(
                        "Flush for message %s failed after %d attempts: %s",
                        state.message_id, attempts, exc, exc_info=True,
                    )
                    raise TranscriptWriteError(
                        f"Could not persist streamed text for message {state.message_id}",
                        code="flush_failed",
                    ) from exc
                logger.warning(
                    "Flush for message %s failed (attempt %d/%d), retrying: %s",
                    state.message_id, attempt, attempts, exc,
                )
                await asyncio.sleep(0)
        return None

    async def _handle_upstream_error(self, state: StreamState, exc: Exception) -> None:
        error_class, user_msg, log_msg = classify_llm_error(exc)
        logger.error("Generation for message %s failed. %s", state.message_id, log_msg, exc_info=True)
        state.buffer += self._notice(state, f"{ERROR_NOTICE_PREFIX} {user_msg}")
        await self._flush(state)
        state.outcome = VersionStatus.ERROR
        state.error_details = error_class.__name__

    def _notice(self, state: StreamState, text: str) -> str:
        return f"{NOTICE_SEPARATOR}{text}" if state.has_text else text

    def _finalize(self, state: StreamState) -> None:
        if not self._store.finalize_generation(
            state.message_id, state.version_index, state.outcome, state.error_details
        ):
            logger.warning("Message %s not found while sealing generation", state.message_id)
            return
        logger.info(
            "Generation for message %s finished: outcome=%s fragments=%d flushes=%d",
            state.message_id, state.outcome.value, state.fragments, state.flushes,
        )

    async def _finalize_best_effort(
        self,
        state: StreamState,
        status: VersionStatus,
        error_details: Optional[str] = None,
        marker: Optional[str] = None,
    ) -> None:
        """Leave the message terminal after a fault that will be re-raised."""
        state.outcome = status
        state.error_details = error_details
        try:
            if marker:
                state.buffer += self._notice(state, marker)
                await self._flush(state)
            self._store.finalize_generation(state.message_id, state.version_index, status, error_details)
        except Exception as exc:
            logger.error(
                "Could not finalize message %s after failure: %s",
                state.message_id, exc, exc_info=True,
            )


async def _close_stream(stream) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:
        logger.debug("Error closing completion stream: %s", exc)
