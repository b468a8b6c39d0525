"""Raw assistant stream transcripts, one JSONL file per session."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from codethreads.errors import PersistenceError
from codethreads.protocol.io import append_jsonl, ensure_parent, read_jsonl, safe_filename
from codethreads.protocol.models import RepositoryRef

log = logging.getLogger(__name__)


class SessionTranscripts:
    """``<base>/sessions/<org>/<repo>/<YYYYmmdd_HHMMSS>_<session_id>.jsonl``.

    A session resumed across several submissions keeps appending to the file
    created on its first submission.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _repo_dir(self, repository: RepositoryRef) -> Path:
        return self.root / safe_filename(repository.org) / safe_filename(repository.name)

    def find(self, repository: RepositoryRef, session_id: str) -> Path | None:
        repo_dir = self._repo_dir(repository)
        if not repo_dir.exists():
            return None
        suffix = f"_{safe_filename(session_id)}.jsonl"
        for path in sorted(repo_dir.iterdir()):
            if path.name.endswith(suffix):
                return path
        return None

    def append(self, repository: RepositoryRef, session_id: str, lines: Iterable[str]) -> Path:
        """Append raw stream lines, storing JSON lines as objects and others as text."""
        path = self.find(repository, session_id)
        if path is None:
            stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
            path = self._repo_dir(repository) / f"{stamp}_{safe_filename(session_id)}.jsonl"
        ensure_parent(path)
        for line in lines:
            if not line.strip():
                continue
            item: Any
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                item = {"type": "raw", "text": line}
            append_jsonl(path, item)
        return path

    def append_event(self, repository: RepositoryRef, session_id: str, event: dict[str, Any]) -> None:
        path = self.find(repository, session_id)
        if path is None:
            log.debug("No transcript for session %s; event dropped", session_id)
            return
        append_jsonl(path, event)

    def load(self, repository: RepositoryRef, session_id: str) -> list[Any]:
        path = self.find(repository, session_id)
        return read_jsonl(path) if path else []

    def list_sessions(self, repository: RepositoryRef) -> list[str]:
        """Session ids for a repository, oldest first."""
        repo_dir = self._repo_dir(repository)
        if not repo_dir.exists():
            return []
        sessions: list[str] = []
        for path in sorted(repo_dir.glob("*.jsonl")):
            # <date>_<time>_<session_id>
            parts = path.stem.split("_", 2)
            if len(parts) == 3:
                sessions.append(parts[2])
        return sessions

    def delete(self, repository: RepositoryRef, session_id: str) -> bool:
        path = self.find(repository, session_id)
        if path is None:
            return False
        try:
            path.unlink()
        except OSError as exc:
            raise PersistenceError(f"Could not delete {path}: {exc}", path=str(path)) from exc
        return True
