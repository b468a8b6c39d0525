"""Bundle of every store rooted at one state directory."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from codethreads.protocol.models import default_state_layout
from codethreads.store.audit import AuditLog
from codethreads.store.credentials import CredentialStore
from codethreads.store.queue import MessageQueue
from codethreads.store.sessions import SessionTranscripts
from codethreads.store.threads import ThreadStore


@dataclass(slots=True)
class StateStores:
    layout: dict[str, Path]
    threads: ThreadStore
    audit: AuditLog
    queue: MessageQueue
    sessions: SessionTranscripts
    credentials: CredentialStore


def open_stores(base_dir: Path) -> StateStores:
    layout = default_state_layout(base_dir)
    for key in ("threads", "audit", "queued_messages", "sessions", "credentials", "worktrees"):
        layout[key].mkdir(parents=True, exist_ok=True)
    return StateStores(
        layout=layout,
        threads=ThreadStore(layout["threads"]),
        audit=AuditLog(layout["audit"]),
        queue=MessageQueue(layout["queued_messages"]),
        sessions=SessionTranscripts(layout["sessions"]),
        credentials=CredentialStore(layout["credentials"]),
    )
