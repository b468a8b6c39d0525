"""Append-only audit trail partitioned by calendar day."""

from __future__ import annotations

import logging
import re
import shutil
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

from codethreads.errors import PersistenceError
from codethreads.protocol.io import append_jsonl, read_jsonl
from codethreads.protocol.models import AuditEntry

log = logging.getLogger(__name__)

_DATE_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Action tags written by the orchestrator and worker.
WORKER_CREATED = "worker_created"
REPOSITORY_CONFIGURED = "repository_configured"
MESSAGE_RECEIVED = "message_received"
MESSAGE_QUEUED = "message_queued"
QUEUED_MESSAGES_PROCESSED = "queued_message_processed"
RATE_LIMIT_DETECTED = "rate_limit_detected"
RATE_LIMIT_AUTO_RESUME_ENABLED = "rate_limit_auto_resume_enabled"
RATE_LIMIT_MANUAL_RESUME_SELECTED = "rate_limit_manual_resume_selected"
RATE_LIMIT_MANUAL_RESUME = "rate_limit_manual_resume"
AUTO_RESUME_EXECUTED = "auto_resume_executed"
AUTO_RESUME_FAILED = "auto_resume_failed"
RATE_LIMIT_TIMER_RESTORED = "rate_limit_timer_restored"
RATE_LIMIT_TIMER_RESTORED_IMMEDIATE = "rate_limit_timer_restored_immediate"
THREAD_RESTORED = "thread_restored"
THREAD_ARCHIVED_ON_RESTORE = "thread_archived_on_restore"
THREAD_TERMINATED = "thread_terminated"
EXECUTION_INTERRUPTED = "execution_interrupted"


class AuditLog:
    """``<base>/audit/YYYY-MM-DD/activity.jsonl``, one JSON object per line."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _file_for(self, day: str) -> Path:
        return self.root / day / "activity.jsonl"

    def append(self, entry: AuditEntry) -> None:
        day = entry.timestamp[:10]
        append_jsonl(self._file_for(day), entry.to_dict())

    def record(self, thread_id: str, action: str, details: dict[str, Any] | None = None) -> None:
        """Write an entry; failures are logged and never propagate."""
        entry = AuditEntry(
            timestamp=datetime.now(UTC).isoformat(),
            thread_id=thread_id,
            action=action,
            details=dict(details or {}),
        )
        try:
            self.append(entry)
        except (PersistenceError, TypeError, ValueError) as exc:
            log.error("Failed to write audit entry %s for %s: %s", action, thread_id, exc)

    def dates(self) -> list[str]:
        """Available day partitions, newest first."""
        if not self.root.exists():
            return []
        days = [p.name for p in self.root.iterdir() if p.is_dir() and _DATE_DIR.match(p.name)]
        return sorted(days, reverse=True)

    def entries_for_date(self, day: str | date) -> list[AuditEntry]:
        key = day.isoformat() if isinstance(day, date) else day
        return [
            AuditEntry.from_dict(raw)
            for raw in read_jsonl(self._file_for(key))
            if isinstance(raw, dict)
        ]

    def _all_entries(self, days: int | None) -> list[AuditEntry]:
        selected = self.dates()
        if days is not None:
            selected = selected[:days]
        entries: list[AuditEntry] = []
        for day in selected:
            entries.extend(self.entries_for_date(day))
        return entries

    def by_thread(self, thread_id: str, *, days: int | None = None) -> list[AuditEntry]:
        matches = [e for e in self._all_entries(days) if e.thread_id == thread_id]
        return sorted(matches, key=lambda e: e.timestamp, reverse=True)

    def by_action(self, action: str, *, days: int | None = None) -> list[AuditEntry]:
        matches = [e for e in self._all_entries(days) if e.action == action]
        return sorted(matches, key=lambda e: e.timestamp, reverse=True)

    def cleanup(self, retention_days: int, *, today: date | None = None) -> list[str]:
        """Delete day partitions older than ``retention_days``; returns removed days."""
        current = today or datetime.now(UTC).date()
        cutoff = (current - timedelta(days=retention_days)).isoformat()
        removed: list[str] = []
        for day in self.dates():
            if day < cutoff:
                try:
                    shutil.rmtree(self.root / day)
                except OSError as exc:
                    log.warning("Could not remove audit partition %s: %s", day, exc)
                    continue
                removed.append(day)
        if removed:
            log.info("Removed %d audit partitions older than %s", len(removed), cutoff)
        return removed
