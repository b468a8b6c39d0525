"""Lock helpers: flock for files, per-key locks for in-process state."""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import threading
from collections.abc import AsyncIterator, Iterator
from pathlib import Path


@contextlib.contextmanager
def locked_file(path: Path) -> Iterator[None]:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class KeyedLock:
    """One ``threading.Lock`` per key; different keys never contend.

    A key's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def _acquire_ref(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _release_ref(self, key: str) -> None:
        with self._guard:
            remaining = self._users.get(key, 1) - 1
            if remaining:
                self._users[key] = remaining
            else:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._acquire_ref(key)
        try:
            with lock:
                yield
        finally:
            self._release_ref(key)

    def __len__(self) -> int:
        return len(self._locks)


class AsyncKeyedLock:
    """One ``asyncio.Lock`` per key for coroutine flows on the same loop.

    A key's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
