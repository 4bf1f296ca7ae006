"""Timer-plus-accumulator debouncing.

A Debouncer collects keys into a pending set and runs one flush after a quiet
period with no new additions. Every add() restarts the timer, so a burst of
calls turns into a single flush covering the cumulative set.

The flush callback reports which keys it handled; only those leave the
pending set. Keys it did not handle stay pending and ride along with the next
flush, which happens only once something calls add() again.

    debouncer = Debouncer(flush_usernames, delay=0.5)
    debouncer.add({"alice"})
    debouncer.add({"bob"})   # one flush for {"alice", "bob"} 0.5s from now
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

# Quiet period before a debounced flush, in seconds
DEFAULT_DELAY = 0.5


class Debouncer:
    """Coalesce keys into batched flushes.

    Args:
        flush: Coroutine function receiving a snapshot of the pending keys and
            returning the subset that was handled
        delay: Quiet period in seconds
    """

    def __init__(
        self,
        flush: Callable[[frozenset[str]], Awaitable[Iterable[str]]],
        delay: float = DEFAULT_DELAY,
    ):
        self._flush = flush
        self.delay = delay
        self._pending: set[str] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> frozenset[str]:
        """Keys waiting for a flush."""
        return frozenset(self._pending)

    @property
    def scheduled(self) -> bool:
        """True while a flush timer is armed."""
        return self._timer is not None

    def add(self, keys: Iterable[str]) -> None:
        """Add keys to the pending set and restart the quiet period.

        Must be called from a running event loop.
        """
        self._pending.update(keys)
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if not self._pending:
            return
        task = asyncio.ensure_future(self._run(frozenset(self._pending)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, batch: frozenset[str]) -> None:
        logger.debug(f"Flushing {len(batch)} debounced key(s)")
        try:
            handled = await self._flush(batch)
        except Exception:
            logger.warning(f"Debounced flush of {len(batch)} key(s) failed", exc_info=True)
            return
        self._pending.difference_update(handled)

    async def drain(self) -> None:
        """Wait for in-flight flushes to finish (does not fire the timer)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def cancel(self) -> None:
        """Disarm the timer. Pending keys are kept."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
