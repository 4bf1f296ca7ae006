"""Ownership of the current user's identity.

The manager holds exactly one identity slot, modeled as an explicit tagged
state rather than a nullable field:

    Absent  --get_identity()-->  Loading(task)  --found-->  Present(identity)
                                       |
                                       +--nothing stored-->  Absent

Every caller that arrives while the slot is Loading awaits the same task, so
the local store is read at most once per load no matter how many coroutines
ask for the identity concurrently.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeVar

from . import identity as codec
from .errors import ActivationFailed, DecryptionFailed, IdentityMissing, MalformedIdentity
from .identity import ExportedIdentity, Identity
from .storage import LocalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

IDENTITY_KEY = "identity"
DB_VERSION_KEY = "dbVersion"
DB_VERSION = 1

# Labels of server-stored private key blobs, in the order activation tries them
CANDIDATE_ORDER = ("paper", "device", "passphrase")


class IdentityState(Enum):
    ABSENT = "absent"
    LOADING = "loading"
    PRESENT = "present"


@dataclass(frozen=True)
class _Absent:
    state = IdentityState.ABSENT


@dataclass(frozen=True)
class _Loading:
    task: asyncio.Future
    state = IdentityState.LOADING


@dataclass(frozen=True)
class _Present:
    identity: Identity
    state = IdentityState.PRESENT


_ABSENT = _Absent()


class KeySubmitter(Protocol):
    """Remote key submission, as implemented by client.TopicKeysClient."""

    async def submit_keys(
        self,
        public: str,
        private: str | Mapping[str, str],
        overwrite: bool = False,
    ) -> None: ...


def order_candidates(candidates: Mapping[str, str]) -> list[tuple[str, str]]:
    """Order labeled private key blobs: paper keys, device keys, passphrase.

    Labels are matched by prefix (``paper_2024``, ``device_laptop``).
    Unrecognized labels go last, in their original order.
    """

    def rank(label: str) -> int:
        for i, prefix in enumerate(CANDIDATE_ORDER):
            if label == prefix or label.startswith(f"{prefix}_"):
                return i
        return len(CANDIDATE_ORDER)

    return sorted(candidates.items(), key=lambda item: rank(item[0]))


def first_success(
    attempts: Iterable[Callable[[], T]],
    exceptions: tuple[type[Exception], ...],
) -> T | None:
    """Run attempts in order and return the first result that does not raise.

    Only the listed exceptions count as a failed attempt; anything else
    propagates. Returns None when every attempt fails.
    """
    for attempt in attempts:
        try:
            return attempt()
        except exceptions as e:
            logger.debug(f"Attempt failed: {e}")
    return None


class IdentityManager:
    """Loads, creates, activates and persists the local identity.

    Args:
        store: Local persistent store holding the identity record
        remote: Optional remote key store; activation syncs upgraded
            identities to it
    """

    def __init__(self, store: LocalStore, remote: KeySubmitter | None = None):
        self._store = store
        self._remote = remote
        self._slot: _Absent | _Loading | _Present = _ABSENT

    @property
    def state(self) -> IdentityState:
        return self._slot.state

    async def get_identity(self) -> Identity | None:
        """Return the local identity, loading it on first use.

        Returns None if no identity is stored locally.

        Raises:
            MalformedIdentity: If the stored identity cannot be decoded
        """
        slot = self._slot
        if isinstance(slot, _Present):
            return slot.identity

        if isinstance(slot, _Absent):
            slot = _Loading(asyncio.ensure_future(self._load()))
            self._slot = slot

        # Shield so one cancelled caller does not cancel the shared load
        return await asyncio.shield(slot.task)

    async def require_identity(self) -> Identity:
        """Like get_identity, but raise IdentityMissing instead of returning None."""
        identity = await self.get_identity()
        if identity is None:
            raise IdentityMissing("No identity stored locally")
        return identity

    async def has_identity(self) -> bool:
        return await self.get_identity() is not None

    async def _load(self) -> Identity | None:
        identity = None
        try:
            identity = await self._read()
        finally:
            # A save/forget during the load wins over the loaded value
            if isinstance(self._slot, _Loading):
                self._slot = _Present(identity) if identity is not None else _ABSENT
        slot = self._slot
        return slot.identity if isinstance(slot, _Present) else None

    async def _read(self) -> Identity | None:
        marker = await self._store.load(DB_VERSION_KEY)
        if marker is not None:
            try:
                stored_version = int(marker.decode("ascii"))
            except (UnicodeDecodeError, ValueError) as e:
                raise MalformedIdentity(f"Invalid local store version marker: {marker!r}") from e
            if stored_version > DB_VERSION:
                raise MalformedIdentity(
                    f"Local store version {stored_version} is newer than supported ({DB_VERSION})"
                )

        data = await self._store.load(IDENTITY_KEY)
        if data is None:
            return None
        try:
            encoded = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedIdentity("Stored identity is not valid UTF-8") from e

        identity = codec.decode(encoded)
        logger.debug(f"Loaded version {identity.version} identity from local store")
        return identity

    async def save_identity(self, identity: Identity) -> None:
        """Persist an identity locally and make it the active one."""
        if identity.is_public:
            raise ValueError("Cannot activate a public identity")
        await self._store.save(DB_VERSION_KEY, str(DB_VERSION).encode("ascii"))
        await self._store.save(IDENTITY_KEY, codec.encode(identity).encode("utf-8"))
        self._slot = _Present(identity)

    async def forget_identity(self) -> None:
        """Remove the local identity (the server-side export is untouched)."""
        await self._store.delete(IDENTITY_KEY)
        self._slot = _ABSENT

    def generate_identity(self, version: int = codec.CURRENT_VERSION) -> Identity:
        """Generate fresh key material. Does not activate it."""
        return codec.generate_identity(version)

    async def setup(self, passphrase: str, version: int = codec.CURRENT_VERSION) -> Identity:
        """First-time setup: generate, activate and publish a new identity.

        Raises:
            ApiError: If the server already holds keys for this user
        """
        identity = self.generate_identity(version)
        exported = codec.export_encrypted(identity, passphrase)
        if self._remote is not None:
            await self._remote.submit_keys(
                exported.public, {"passphrase": exported.private}, overwrite=False
            )
        await self.save_identity(identity)
        logger.info("Generated and activated a new identity")
        return identity

    async def export_identity(self, passphrase: str) -> ExportedIdentity:
        identity = await self.require_identity()
        return codec.export_encrypted(identity, passphrase)

    async def activate(self, passphrase: str, candidates: Mapping[str, str]) -> Identity:
        """
        Activate an identity from server-stored private key blobs.

        Candidates are tried in order (paper keys, device keys, passphrase
        key); the first blob the passphrase decrypts wins. A legacy
        (version 0) result is upgraded, keeping its encryption keypair, and
        the upgraded export is pushed to the remote key store with
        overwrite set.

        Args:
            passphrase: User-supplied passphrase
            candidates: Label -> exported private blob

        Returns:
            The active identity

        Raises:
            ActivationFailed: If no candidate decrypts with the passphrase
        """
        ordered = order_candidates(candidates)
        identity = first_success(
            (functools.partial(codec.import_encrypted, blob, passphrase) for _, blob in ordered),
            (DecryptionFailed, MalformedIdentity),
        )
        if identity is None:
            raise ActivationFailed(f"Passphrase did not unlock any of {len(ordered)} key(s)")

        upgraded = codec.upgrade_identity(identity)
        await self.save_identity(upgraded)

        if upgraded is not identity:
            logger.info(f"Upgraded identity from version {identity.version} to {upgraded.version}")
            if self._remote is not None:
                exported = codec.export_encrypted(upgraded, passphrase)
                await self._remote.submit_keys(
                    exported.public, {"passphrase": exported.private}, overwrite=True
                )

        return upgraded
