"""Durable per-thread metadata records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from codethreads.errors import PersistenceError
from codethreads.protocol.io import read_json_strict, safe_filename, write_json_atomic
from codethreads.protocol.locks import KeyedLock
from codethreads.protocol.models import ThreadRecord, ThreadStatus

log = logging.getLogger(__name__)


class ThreadStore:
    """One JSON file per thread under ``<base>/threads``.

    ``update`` performs the read-modify-write under a per-thread lock so two
    flows touching the same thread never interleave, while different threads
    proceed independently.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._locks = KeyedLock()

    def path_for(self, thread_id: str) -> Path:
        return self.root / f"{safe_filename(thread_id)}.json"

    def exists(self, thread_id: str) -> bool:
        return self.path_for(thread_id).exists()

    def load(self, thread_id: str) -> ThreadRecord | None:
        """Return the record, ``None`` when missing; corrupt files raise."""
        path = self.path_for(thread_id)
        raw = read_json_strict(path)
        if raw is None:
            return None
        try:
            return ThreadRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Malformed thread record {path}: {exc}", path=str(path)) from exc

    def save(self, record: ThreadRecord) -> None:
        with self._locks.hold(record.thread_id):
            write_json_atomic(self.path_for(record.thread_id), record.to_dict())

    def create(self, record: ThreadRecord) -> ThreadRecord:
        self.save(record)
        log.debug("Created thread record %s", record.thread_id)
        return record

    def update(
        self,
        thread_id: str,
        mutate: Callable[[ThreadRecord], None],
    ) -> ThreadRecord | None:
        """Apply ``mutate`` to the stored record and persist the result.

        Returns the updated record, or ``None`` if no record exists.
        """
        with self._locks.hold(thread_id):
            record = self.load(thread_id)
            if record is None:
                return None
            mutate(record)
            write_json_atomic(self.path_for(thread_id), record.to_dict())
            return record

    def archive(self, thread_id: str, reason: str | None = None) -> ThreadRecord | None:
        def _archive(record: ThreadRecord) -> None:
            record.status = "archived"
            record.archive_reason = reason
            record.touch()

        return self.update(thread_id, _archive)

    def list_all(self) -> list[ThreadRecord]:
        if not self.root.exists():
            return []
        records: list[ThreadRecord] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                record = self.load(path.stem)
            except PersistenceError as exc:
                log.warning("Skipping unreadable thread record %s: %s", path, exc)
                continue
            if record is not None:
                records.append(record)
        return records

    def list_by_status(self, status: ThreadStatus) -> list[ThreadRecord]:
        return [r for r in self.list_all() if r.status == status]
