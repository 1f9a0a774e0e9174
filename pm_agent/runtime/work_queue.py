"""Single-consumer FIFO work queue."""

from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from typing import Awaitable, Callable, Deque, Optional

from pm_agent.domain.models import InboundEvent, QueueEntry
from pm_agent.domain.result import Err
from pm_agent.infrastructure.logging.logger import logger


EntryHandler = Callable[[QueueEntry], Awaitable[object]]


class WorkQueue:
    """Buffers admitted events and feeds them to ``handler`` one at a time.

    A periodic loop calls :meth:`tick`. Each tick is a no-op while an entry
    is processing or while less than ``min_interval`` has passed since the
    last completion; otherwise it takes the oldest buffered entry and awaits
    the handler. Finished entries stay in the entry map for ``entry_ttl``
    seconds so duplicates can still be detected.
    """

    def __init__(
        self,
        handler: EntryHandler,
        *,
        clock: Callable[[], float],
        tick_interval: float = 0.1,
        min_interval: float = 0.1,
        entry_ttl: float = 300.0,
    ):
        self._handler = handler
        self._clock = clock
        self._tick_interval = tick_interval
        self._min_interval = min_interval
        self._entry_ttl = entry_ttl
        self._buffer: Deque[QueueEntry] = deque()
        self._entries: "OrderedDict[str, QueueEntry]" = OrderedDict()
        self._processing = False
        self._last_completed_at: Optional[float] = None
        self._last_processed_id: Optional[str] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._stopped = False

    # ---- state ----

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def last_processed_id(self) -> Optional[str]:
        return self._last_processed_id

    @property
    def pending_count(self) -> int:
        return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def contains(self, message_id: str) -> bool:
        self._evict_expired()
        return message_id in self._entries

    def get(self, message_id: str) -> Optional[QueueEntry]:
        return self._entries.get(message_id)

    # ---- producer side ----

    def push(self, event: InboundEvent) -> QueueEntry:
        entry = QueueEntry(message_id=event.message_id, payload=event, enqueued_at=self._clock())
        self._entries[entry.message_id] = entry
        self._buffer.append(entry)
        return entry

    # ---- consumer side ----

    async def tick(self) -> bool:
        """Run one scheduling step. Returns True when an entry was processed."""
        self._evict_expired()
        if self._stopped or self._processing or not self._buffer:
            return False
        if (
            self._last_completed_at is not None
            and self._clock() - self._last_completed_at < self._min_interval
        ):
            return False

        entry = self._buffer.popleft()
        entry.status = "processing"
        self._processing = True
        ctx = {"message_id": entry.message_id}
        try:
            outcome = await self._handler(entry)
            entry.status = "error" if isinstance(outcome, Err) else "done"
        except asyncio.CancelledError:
            entry.status = "error"
            raise
        except Exception:
            entry.status = "error"
            logger.exception("Queue handler failed", extra={"extra": ctx})
        finally:
            now = self._clock()
            entry.finished_at = now
            self._last_completed_at = now
            self._last_processed_id = entry.message_id
            self._processing = False
        return True

    async def _run(self) -> None:
        while not self._stopped:
            await self.tick()
            await asyncio.sleep(self._tick_interval)

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._loop_task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop, cancelling an in-flight handler if any, and clear all state."""
        self._stopped = True
        task, self._loop_task = self._loop_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear()

    def clear(self) -> None:
        self._buffer.clear()
        self._entries.clear()

    def _evict_expired(self) -> None:
        if not self._entries:
            return
        now = self._clock()
        expired = [
            mid
            for mid, e in self._entries.items()
            if e.finished_at is not None and now - e.finished_at >= self._entry_ttl
        ]
        for mid in expired:
            del self._entries[mid]
