"""
Registry of in-flight generation tasks.

Each assistant message being generated has one asyncio task and one cancel
event. The durable ``is_aborted`` flag stays the source of truth; the event
only lets an abort issued in this process take effect on the next fragment
instead of the next poll.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class GenerationTask:
    """A running generation bound to one message id."""
    message_id: str
    task: asyncio.Task
    cancel_event: asyncio.Event
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class GenerationTaskRegistry:
    """Tracks one generation task per message id."""

    def __init__(self):
        self._tasks: Dict[str, GenerationTask] = {}

    def start(
        self,
        message_id: str,
        factory: Callable[[asyncio.Event], Awaitable[object]],
    ) -> GenerationTask:
        """Schedule ``factory(cancel_event)`` as the generation task for ``message_id``.

        A previous task for the same message is asked to stop first; it keeps
        writing only until its next fragment.
        """
        previous = self._tasks.get(message_id)
        if previous is not None and not previous.task.done():
            logger.info("Replacing running generation for message %s", message_id)
            previous.cancel_event.set()

        cancel_event = asyncio.Event()
        task = asyncio.create_task(factory(cancel_event), name=f"generation-{message_id}")
        entry = GenerationTask(message_id=message_id, task=task, cancel_event=cancel_event)
        self._tasks[message_id] = entry
        task.add_done_callback(lambda t: self._on_done(entry))
        return entry

    def _on_done(self, entry: GenerationTask) -> None:
        if self._tasks.get(entry.message_id) is entry:
            del self._tasks[entry.message_id]
        if entry.task.cancelled():
            logger.info("Generation task for message %s was cancelled", entry.message_id)
            return
        exc = entry.task.exception()
        if exc is not None:
            logger.error(
                "Generation task for message %s failed: %s",
                entry.message_id, exc, exc_info=exc,
            )

    def get(self, message_id: str) -> Optional[GenerationTask]:
        return self._tasks.get(message_id)

    def signal_abort(self, message_id: str) -> bool:
        """Set the cancel event of a running task. Returns False when none is running here."""
        entry = self._tasks.get(message_id)
        if entry is None:
            return False
        entry.cancel_event.set()
        return True

    async def stop(self, message_id: str, timeout: float = 10.0) -> bool:
        """Ask the running task for ``message_id`` to stop and wait until it has.

        The task finalizes its own attempt before this returns, so a new
        attempt on the same message starts from settled state. A task that
        ignores the event past ``timeout`` is cancelled. Returns False when
        nothing was running.
        """
        entry = self._tasks.get(message_id)
        if entry is None or entry.task.done():
            return False
        entry.cancel_event.set()
        done, _pending = await asyncio.wait([entry.task], timeout=timeout)
        if not done:
            logger.warning("Generation for message %s ignored stop; cancelling", message_id)
            entry.task.cancel()
            await asyncio.wait([entry.task])
        return True

    def active_message_ids(self) -> List[str]:
        return [mid for mid, entry in self._tasks.items() if not entry.task.done()]

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until every running generation has finished."""
        pending = [entry.task for entry in self._tasks.values() if not entry.task.done()]
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning("%d generation tasks still running after wait_idle", len(still_pending))

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Ask every generation to stop, then cancel whatever is left."""
        for entry in list(self._tasks.values()):
            entry.cancel_event.set()
        await self.wait_idle(timeout=timeout)
        for entry in list(self._tasks.values()):
            if not entry.task.done():
                entry.task.cancel()
        remaining = [entry.task for entry in self._tasks.values()]
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)
