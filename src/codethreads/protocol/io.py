"""Protocol IO helpers with atomic writes and lock support."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

from codethreads.errors import PersistenceError
from codethreads.protocol.locks import locked_file

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def safe_filename(key: str) -> str:
    """Map an opaque id onto a single path component."""
    cleaned = _UNSAFE_CHARS.sub("_", key)
    if cleaned in ("", ".", ".."):
        raise ValueError(f"unusable identifier {key!r}")
    return cleaned


def read_json(path: Path, default: Any) -> Any:
    """Read JSON, returning ``default`` for a missing or unreadable file."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return default


def read_json_strict(path: Path) -> Any:
    """Read JSON, raising :class:`PersistenceError` when the file is corrupt.

    Returns ``None`` for a missing file.
    """
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise PersistenceError(f"Could not read {path}: {exc}", path=str(path)) from exc


def write_json_atomic(path: Path, data: Any, *, mode: int | None = None) -> None:
    try:
        ensure_parent(path)
        tmp = path.with_suffix(path.suffix + ".tmp")
        payload = json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False) + "\n"
        with tmp.open("w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except OSError as exc:
        raise PersistenceError(f"Could not write {path}: {exc}", path=str(path)) from exc


def append_jsonl(path: Path, item: Any) -> None:
    line = json.dumps(item, ensure_ascii=False) + "\n"
    try:
        ensure_parent(path)
        with locked_file(path.with_suffix(path.suffix + ".lock")):
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)
    except OSError as exc:
        raise PersistenceError(f"Could not append to {path}: {exc}", path=str(path)) from exc


def read_jsonl(path: Path) -> list[Any]:
    """Read every parseable line of a JSONL file; malformed lines are skipped."""
    if not path.exists():
        return []
    items: list[Any] = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return items
