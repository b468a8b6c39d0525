"""Tests for the day-partitioned audit trail."""

from __future__ import annotations

from datetime import date
from pathlib import Path
from unittest.mock import patch

import pytest

from codethreads.errors import PersistenceError
from codethreads.protocol.models import AuditEntry
from codethreads.store import audit as actions
from codethreads.store.audit import AuditLog


@pytest.fixture
def audit(tmp_path: Path) -> AuditLog:
    return AuditLog(tmp_path / "audit")


def _entry(ts: str, thread_id: str, action: str) -> AuditEntry:
    return AuditEntry(timestamp=ts, thread_id=thread_id, action=action, details={"n": 1})


class TestAppend:
    def test_entries_land_in_day_partition(self, audit: AuditLog) -> None:
        audit.append(_entry("2026-03-01T10:00:00+00:00", "t1", actions.WORKER_CREATED))
        audit.append(_entry("2026-03-01T11:00:00+00:00", "t2", actions.MESSAGE_RECEIVED))
        audit.append(_entry("2026-03-02T09:00:00+00:00", "t1", actions.RATE_LIMIT_DETECTED))

        assert (audit.root / "2026-03-01" / "activity.jsonl").exists()
        assert audit.dates() == ["2026-03-02", "2026-03-01"]
        day = audit.entries_for_date(date(2026, 3, 1))
        assert [e.action for e in day] == [actions.WORKER_CREATED, actions.MESSAGE_RECEIVED]
        assert day[0].details == {"n": 1}

    def test_record_uses_current_day(self, audit: AuditLog) -> None:
        audit.record("t1", actions.THREAD_RESTORED, {"worker": "x"})
        [day] = audit.dates()
        [entry] = audit.entries_for_date(day)
        assert entry.thread_id == "t1"
        assert entry.timestamp.startswith(day)

    def test_record_swallows_write_failures(self, audit: AuditLog) -> None:
        with patch.object(AuditLog, "append", side_effect=PersistenceError("disk full")):
            audit.record("t1", actions.THREAD_RESTORED)
        assert audit.dates() == []

    def test_record_tolerates_unserializable_details(self, audit: AuditLog) -> None:
        audit.record("t1", actions.THREAD_RESTORED, {"when": object()})
        assert audit.dates() == []
        audit.record("t1", actions.THREAD_RESTORED, {"n": 1})
        assert len(audit.by_thread("t1")) == 1

    def test_malformed_lines_skipped(self, audit: AuditLog) -> None:
        audit.append(_entry("2026-03-01T10:00:00+00:00", "t1", actions.WORKER_CREATED))
        with (audit.root / "2026-03-01" / "activity.jsonl").open("a") as handle:
            handle.write("garbage\n")
        assert len(audit.entries_for_date("2026-03-01")) == 1

    def test_missing_day(self, audit: AuditLog) -> None:
        assert audit.entries_for_date("1999-01-01") == []


class TestQueries:
    def _seed(self, audit: AuditLog) -> None:
        audit.append(_entry("2026-03-01T10:00:00+00:00", "t1", actions.WORKER_CREATED))
        audit.append(_entry("2026-03-02T10:00:00+00:00", "t2", actions.WORKER_CREATED))
        audit.append(_entry("2026-03-03T10:00:00+00:00", "t1", actions.MESSAGE_RECEIVED))
        audit.append(_entry("2026-03-03T12:00:00+00:00", "t1", actions.RATE_LIMIT_DETECTED))

    def test_by_thread_newest_first(self, audit: AuditLog) -> None:
        self._seed(audit)
        entries = audit.by_thread("t1")
        assert [e.action for e in entries] == [
            actions.RATE_LIMIT_DETECTED,
            actions.MESSAGE_RECEIVED,
            actions.WORKER_CREATED,
        ]

    def test_by_thread_limited_days(self, audit: AuditLog) -> None:
        self._seed(audit)
        assert len(audit.by_thread("t1", days=1)) == 2

    def test_by_action(self, audit: AuditLog) -> None:
        self._seed(audit)
        entries = audit.by_action(actions.WORKER_CREATED)
        assert [e.thread_id for e in entries] == ["t2", "t1"]


class TestCleanup:
    def test_removes_old_partitions(self, audit: AuditLog) -> None:
        for day in ("2026-01-01", "2026-02-20", "2026-03-01"):
            audit.append(_entry(f"{day}T00:00:00+00:00", "t", actions.WORKER_CREATED))
        (audit.root / "not-a-date").mkdir()

        removed = audit.cleanup(30, today=date(2026, 3, 2))

        assert removed == ["2026-01-01"]
        assert audit.dates() == ["2026-03-01", "2026-02-20"]
        assert (audit.root / "not-a-date").exists()

    def test_nothing_to_remove(self, audit: AuditLog) -> None:
        assert audit.cleanup(30) == []
