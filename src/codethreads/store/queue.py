"""Per-thread FIFO backlog of inbound messages."""

from __future__ import annotations

import logging
from pathlib import Path

from codethreads.errors import PersistenceError
from codethreads.protocol.io import read_json_strict, safe_filename, write_json_atomic
from codethreads.protocol.locks import KeyedLock
from codethreads.protocol.models import QueuedMessage, ThreadQueue, epoch_ms

log = logging.getLogger(__name__)


class MessageQueue:
    """One ``<base>/queued_messages/<thread_id>.json`` file per thread."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._locks = KeyedLock()

    def _path(self, thread_id: str) -> Path:
        return self.root / f"{safe_filename(thread_id)}.json"

    def _read(self, thread_id: str) -> ThreadQueue:
        path = self._path(thread_id)
        raw = read_json_strict(path)
        if raw is None:
            return ThreadQueue(thread_id=thread_id)
        try:
            return ThreadQueue.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Malformed queue file {path}: {exc}", path=str(path)) from exc

    def _write(self, queue: ThreadQueue) -> None:
        write_json_atomic(self._path(queue.thread_id), queue.to_dict())

    def add(self, thread_id: str, message: QueuedMessage) -> int:
        """Append a message; returns the new backlog length."""
        with self._locks.hold(thread_id):
            queue = self._read(thread_id)
            queue.messages.append(message)
            self._write(queue)
            return len(queue.messages)

    def requeue(self, thread_id: str, messages: list[QueuedMessage]) -> None:
        """Put previously drained messages back in front of the backlog."""
        if not messages:
            return
        with self._locks.hold(thread_id):
            queue = self._read(thread_id)
            queue.messages = list(messages) + queue.messages
            self._write(queue)

    def drain(self, thread_id: str) -> list[QueuedMessage]:
        """Return every queued message in arrival order and delete the backlog."""
        with self._locks.hold(thread_id):
            queue = self._read(thread_id)
            path = self._path(thread_id)
            if path.exists():
                try:
                    path.unlink()
                except OSError as exc:
                    raise PersistenceError(f"Could not clear {path}: {exc}", path=str(path)) from exc
            return queue.messages

    def peek(self, thread_id: str) -> list[QueuedMessage]:
        return list(self._read(thread_id).messages)

    def delete(self, thread_id: str) -> bool:
        with self._locks.hold(thread_id):
            path = self._path(thread_id)
            if not path.exists():
                return False
            path.unlink()
            return True

    def length(self, thread_id: str) -> int:
        try:
            return len(self._read(thread_id).messages)
        except PersistenceError as exc:
            log.warning("Unreadable queue for %s: %s", thread_id, exc)
            return 0

    def list_queues(self) -> list[ThreadQueue]:
        """Every non-empty backlog, deepest first."""
        if not self.root.exists():
            return []
        queues: list[ThreadQueue] = []
        for path in self.root.glob("*.json"):
            try:
                queue = self._read(path.stem)
            except PersistenceError as exc:
                log.warning("Skipping unreadable queue %s: %s", path, exc)
                continue
            if queue.messages:
                queues.append(queue)
        return sorted(queues, key=lambda q: len(q.messages), reverse=True)

    def remove_older_than(self, max_age_seconds: int, *, now_ms: int | None = None) -> int:
        """Drop messages older than ``max_age_seconds``; returns how many were removed."""
        cutoff = (now_ms if now_ms is not None else epoch_ms()) - max_age_seconds * 1000
        removed = 0
        for queue in self.list_queues():
            with self._locks.hold(queue.thread_id):
                current = self._read(queue.thread_id)
                kept = [m for m in current.messages if m.timestamp >= cutoff]
                dropped = len(current.messages) - len(kept)
                if not dropped:
                    continue
                removed += dropped
                if kept:
                    current.messages = kept
                    self._write(current)
                else:
                    self._path(queue.thread_id).unlink(missing_ok=True)
        if removed:
            log.info("Removed %d queued messages older than %ds", removed, max_age_seconds)
        return removed

    def cleanup_empty(self) -> int:
        """Delete backlog files holding no messages; returns how many were deleted."""
        if not self.root.exists():
            return 0
        deleted = 0
        for path in self.root.glob("*.json"):
            try:
                thread_id = self._read(path.stem).thread_id
            except PersistenceError:
                continue
            with self._locks.hold(thread_id):
                try:
                    queue = self._read(thread_id)
                except PersistenceError:
                    continue
                if queue.messages:
                    continue
                self._path(thread_id).unlink(missing_ok=True)
                deleted += 1
        return deleted
