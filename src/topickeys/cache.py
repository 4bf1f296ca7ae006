"""Single-flight keyed cache for topickeys.

Each key owns one slot that moves through three states and never goes back:

    raw (stored, not yet usable) -> pending (one resolution in flight) -> resolved

- put() is first-write-wins: a later put for a known key is a no-op.
- get() on a raw slot starts exactly one resolution; every concurrent caller
  for the same key awaits that same task.
- A failed resolution leaves the slot raw so a later get() can retry. A
  resolved value is never replaced.

The topic key cache and the encrypted title cache are both instances of this.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .metrics import metrics

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class _Slot:
    raw: Any = None
    pending: asyncio.Future | None = None
    resolved: bool = False
    value: Any = None


class SingleFlightCache(Generic[V]):
    """Keyed cache where each key resolves at most once at a time.

    Args:
        name: Name of the cache (for metrics)
    """

    def __init__(self, name: str):
        self.name = name
        self._slots: dict[Hashable, _Slot] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def put(self, key: Hashable, raw: Any) -> bool:
        """Store a raw value if the key is unknown.

        Returns:
            True if stored, False if the key already had a value.
        """
        if key in self._slots:
            return False
        self._slots[key] = _Slot(raw=raw)
        return True

    def put_resolved(self, key: Hashable, value: V) -> bool:
        """Store an already-usable value if the key is unknown.

        Returns:
            True if stored, False if the key already had a value.
        """
        if key in self._slots:
            return False
        self._slots[key] = _Slot(resolved=True, value=value)
        return True

    def is_resolved(self, key: Hashable) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.resolved

    def is_pending(self, key: Hashable) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.pending is not None

    async def get(self, key: Hashable, resolve: Callable[[Any], Awaitable[V]]) -> V:
        """Get the usable value for a key, resolving it if needed.

        Args:
            key: Cache key
            resolve: Coroutine function turning the raw value into the usable
                one. Called at most once per resolution attempt.

        Raises:
            KeyError: If nothing was ever stored for the key
            Exception: Whatever resolve raised (the slot stays raw)
        """
        slot = self._slots.get(key)
        if slot is None:
            metrics.record_cache_miss(self.name)
            raise KeyError(key)

        if slot.resolved:
            metrics.record_cache_hit(self.name)
            return slot.value

        metrics.record_cache_miss(self.name)
        if slot.pending is None:
            slot.pending = asyncio.ensure_future(self._resolve(key, slot, resolve))

        # Shield so one cancelled caller does not cancel everyone's resolution
        return await asyncio.shield(slot.pending)

    async def _resolve(
        self,
        key: Hashable,
        slot: _Slot,
        resolve: Callable[[Any], Awaitable[V]],
    ) -> V:
        try:
            value = await resolve(slot.raw)
        except Exception:
            slot.pending = None
            logger.debug(f"Resolution of {self.name}:{key} failed, keeping raw value")
            raise

        slot.value = value
        slot.resolved = True
        slot.raw = None
        slot.pending = None
        return value

    def delete(self, key: Hashable) -> bool:
        """Forget a key entirely.

        Returns:
            True if the key existed.
        """
        return self._slots.pop(key, None) is not None

    def clear(self) -> None:
        """Clear all entries (e.g. on logout)."""
        self._slots.clear()

    def stats(self) -> dict:
        """Get cache statistics."""
        resolved = sum(1 for s in self._slots.values() if s.resolved)
        pending = sum(1 for s in self._slots.values() if s.pending is not None)
        return {
            "size": len(self._slots),
            "resolved": resolved,
            "pending": pending,
        }
