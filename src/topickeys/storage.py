"""Local persistent storage for client-side state.

The identity manager needs a small key-value store that survives restarts:
the identity record and a database-version marker. The interface is async so
a store may be backed by anything with I/O latency.

    store = FileLocalStore(Path("~/.config/topickeys/store"))
    await store.save("identity", b"1$...")
    data = await store.load("identity")
"""

from __future__ import annotations

import asyncio
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class LocalStore(ABC):
    """Abstract async key-value store keyed by fixed names."""

    @abstractmethod
    async def load(self, name: str) -> bytes | None:
        """Load a value, or None if it was never saved."""

    @abstractmethod
    async def save(self, name: str, data: bytes) -> None:
        """Save a value, replacing any previous one."""

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Delete a value. Deleting a missing name is not an error."""


class InMemoryLocalStore(LocalStore):
    """Process-local store, for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def load(self, name: str) -> bytes | None:
        return self._data.get(name)

    async def save(self, name: str, data: bytes) -> None:
        self._data[name] = bytes(data)

    async def delete(self, name: str) -> None:
        self._data.pop(name, None)


class FileLocalStore(LocalStore):
    """One file per name inside a directory.

    Writes go to a temporary file that is renamed into place, so a reader
    never sees a partially written value. File I/O runs in the default
    executor to keep the event loop free.
    """

    def __init__(self, path: Path | str):
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def _file(self, name: str) -> Path:
        if not _NAME_RE.match(name):
            raise ValueError(f"Invalid store name: {name!r}")
        return self._path / name

    def _load_sync(self, name: str) -> bytes | None:
        try:
            return self._file(name).read_bytes()
        except FileNotFoundError:
            return None

    def _save_sync(self, name: str, data: bytes) -> None:
        target = self._file(name)
        self._path.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{name}.tmp")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, target)

    def _delete_sync(self, name: str) -> None:
        self._file(name).unlink(missing_ok=True)

    async def load(self, name: str) -> bytes | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._load_sync, name)

    async def save(self, name: str, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._save_sync, name, data)

    async def delete(self, name: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._delete_sync, name)
