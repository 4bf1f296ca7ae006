"""Resolution of other users' public identities.

Public identities are needed to wrap a topic key for someone else. Lookups
go to the server in batches:

- resolve() fetches every not-yet-cached username in one request, right away.
- resolve_debounced() adds usernames to a shared pending set and fetches
  them all in one request once the quiet period has passed.

Both return a mapping of username -> future. A username the server has no
identity for fails with UnknownIdentity on its own future; the rest of the
batch is unaffected. Failures are not memoized, so asking again retries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping

from .debounce import DEFAULT_DELAY, Debouncer
from .errors import MalformedIdentity, UnknownIdentity
from .identity import Identity, decode
from .metrics import metrics

logger = logging.getLogger(__name__)

CACHE_NAME = "user_identity"

IdentityFetcher = Callable[[frozenset[str]], Awaitable[Mapping[str, str]]]


def _consume_exception(future: asyncio.Future) -> None:
    # Callers may never await a failed lookup; don't warn about it at GC time
    if not future.cancelled():
        future.exception()


class UserIdentityCache:
    """Memoized, batched lookup of public identities by username.

    Args:
        fetch: Coroutine function taking a set of usernames and returning
            username -> encoded public identity; unknown usernames are
            simply absent from the result
        debounce_delay: Quiet period for resolve_debounced(), in seconds
    """

    def __init__(self, fetch: IdentityFetcher, debounce_delay: float = DEFAULT_DELAY):
        self._fetch = fetch
        self._identities: dict[str, asyncio.Future] = {}
        self._debouncer = Debouncer(self._flush_debounced, delay=debounce_delay)
        self._tasks: set[asyncio.Task] = set()

    @property
    def debouncer(self) -> Debouncer:
        return self._debouncer

    def _new_future(self, username: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._identities[username] = future
        return future

    def _is_resolved(self, future: asyncio.Future) -> bool:
        return future.done() and not future.cancelled() and future.exception() is None

    def put(self, username: str, identity: Identity) -> bool:
        """Seed the cache with a known identity. First write wins.

        Must be called from a running event loop.
        """
        if username in self._identities:
            return False
        self._new_future(username).set_result(identity.public())
        return True

    def resolve(self, usernames: Iterable[str]) -> dict[str, asyncio.Future]:
        """Resolve identities, fetching all uncached usernames in one request.

        Must be called from a running event loop.

        Returns:
            username -> future resolving to the public Identity, or failing
            with UnknownIdentity
        """
        result: dict[str, asyncio.Future] = {}
        missing: list[str] = []

        for username in usernames:
            future = self._identities.get(username)
            if future is None:
                metrics.record_cache_miss(CACHE_NAME)
                future = self._new_future(username)
                missing.append(username)
            else:
                metrics.record_cache_hit(CACHE_NAME)
            result[username] = future

        if missing:
            task = asyncio.ensure_future(self._fetch_batch(frozenset(missing)))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return result

    def resolve_debounced(self, usernames: Iterable[str]) -> dict[str, asyncio.Future]:
        """Resolve identities through the shared debounced batch.

        Every call restarts the quiet period; one fetch covers all usernames
        added since the last flush plus any earlier misses still pending.

        Must be called from a running event loop.
        """
        result: dict[str, asyncio.Future] = {}
        to_fetch: list[str] = []

        for username in usernames:
            future = self._identities.get(username)
            if future is not None and self._is_resolved(future):
                metrics.record_cache_hit(CACHE_NAME)
            else:
                metrics.record_cache_miss(CACHE_NAME)
                if future is None:
                    future = self._new_future(username)
                to_fetch.append(username)
            result[username] = future

        if to_fetch:
            self._debouncer.add(to_fetch)

        return result

    async def lookup(self, username: str) -> Identity:
        """Resolve a single identity.

        Raises:
            UnknownIdentity: If the server has no identity for the user
        """
        return await self.resolve([username])[username]

    async def _fetch_batch(self, usernames: frozenset[str]) -> None:
        metrics.increment("identity_fetch")
        try:
            found = await self._fetch(usernames)
        except Exception as e:
            logger.warning(f"Identity lookup for {len(usernames)} user(s) failed: {e}")
            for username in usernames:
                self._fail(username, e)
            return
        self._settle(usernames, found)

    async def _flush_debounced(self, usernames: frozenset[str]) -> set[str]:
        metrics.increment("identity_fetch")
        try:
            found = await self._fetch(usernames)
        except Exception as e:
            for username in usernames:
                self._fail(username, e)
            raise
        return self._settle(usernames, found)

    def _settle(self, usernames: Iterable[str], found: Mapping[str, str]) -> set[str]:
        """Resolve or fail each username's future; return the found ones."""
        handled: set[str] = set()
        for username in usernames:
            encoded = found.get(username)
            if not encoded:
                self._fail(username, UnknownIdentity(username))
                continue

            try:
                identity = decode(encoded).public()
            except MalformedIdentity as e:
                logger.warning(f"Server returned a malformed identity for {username!r}: {e}")
                self._fail(username, e)
                continue

            future = self._identities.get(username)
            if future is None:
                future = self._new_future(username)
            if not future.done():
                future.set_result(identity)
            handled.add(username)

        logger.debug(f"Resolved {len(handled)} of {len(set(usernames))} identities")
        return handled

    def _fail(self, username: str, exc: Exception) -> None:
        future = self._identities.get(username)
        if future is not None and not future.done():
            future.set_exception(exc)
            del self._identities[username]

    def clear(self) -> None:
        """Forget all cached identities and disarm the debounce timer."""
        self._debouncer.cancel()
        for future in self._identities.values():
            if not future.done():
                future.cancel()
        self._identities.clear()
