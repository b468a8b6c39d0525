"""Access tokens keyed by repository full name."""

from __future__ import annotations

import logging
from pathlib import Path

from codethreads.errors import PersistenceError
from codethreads.protocol.io import read_json_strict, write_json_atomic
from codethreads.protocol.models import RepositoryRef, utc_now_iso

log = logging.getLogger(__name__)


class CredentialStore:
    """``<base>/credentials/<org>_<repo>.json`` holding ``{repository, token, updatedAt}``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, full_name: str) -> Path:
        repo = RepositoryRef.parse(full_name)
        return self.root / f"{repo.org}_{repo.name}.json"

    def get(self, full_name: str) -> str | None:
        try:
            raw = read_json_strict(self._path(full_name))
        except PersistenceError as exc:
            log.warning("Unreadable credential record for %s: %s", full_name, exc)
            return None
        if not isinstance(raw, dict):
            return None
        token = raw.get("token")
        return token if isinstance(token, str) and token else None

    def save(self, full_name: str, token: str) -> None:
        write_json_atomic(
            self._path(full_name),
            {"repository": full_name, "token": token, "updatedAt": utc_now_iso()},
            mode=0o600,
        )

    def delete(self, full_name: str) -> bool:
        path = self._path(full_name)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_repositories(self) -> list[str]:
        if not self.root.exists():
            return []
        names: list[str] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                raw = read_json_strict(path)
            except PersistenceError:
                continue
            if isinstance(raw, dict) and isinstance(raw.get("repository"), str):
                names.append(raw["repository"])
        return names
