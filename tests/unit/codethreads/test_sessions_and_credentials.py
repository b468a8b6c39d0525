"""Tests for session transcripts and repository credentials."""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path

import pytest

from codethreads.errors import RepositoryFormatError
from codethreads.protocol.models import RepositoryRef
from codethreads.store.credentials import CredentialStore
from codethreads.store.sessions import SessionTranscripts

REPO = RepositoryRef("acme", "widgets")


class TestSessionTranscripts:
    def test_append_creates_timestamped_file(self, tmp_path: Path) -> None:
        sessions = SessionTranscripts(tmp_path / "sessions")
        path = sessions.append(REPO, "sess-1", [json.dumps({"type": "system"}), "plain text", ""])

        assert path.parent == tmp_path / "sessions" / "acme" / "widgets"
        assert path.name.endswith("_sess-1.jsonl")
        assert sessions.load(REPO, "sess-1") == [
            {"type": "system"},
            {"type": "raw", "text": "plain text"},
        ]

    def test_resumed_session_appends_to_same_file(self, tmp_path: Path) -> None:
        sessions = SessionTranscripts(tmp_path / "sessions")
        first = sessions.append(REPO, "sess-1", ['{"n": 1}'])
        second = sessions.append(REPO, "sess-1", ['{"n": 2}'])
        assert first == second
        assert sessions.load(REPO, "sess-1") == [{"n": 1}, {"n": 2}]
        assert sessions.list_sessions(REPO) == ["sess-1"]

    def test_append_event_requires_existing_transcript(self, tmp_path: Path) -> None:
        sessions = SessionTranscripts(tmp_path / "sessions")
        sessions.append_event(REPO, "missing", {"type": "interrupted"})
        assert sessions.find(REPO, "missing") is None

        sessions.append(REPO, "s2", ['{"n": 1}'])
        sessions.append_event(REPO, "s2", {"type": "interrupted"})
        assert sessions.load(REPO, "s2")[-1] == {"type": "interrupted"}

    def test_delete(self, tmp_path: Path) -> None:
        sessions = SessionTranscripts(tmp_path / "sessions")
        sessions.append(REPO, "s1", ['{"n": 1}'])
        assert sessions.delete(REPO, "s1") is True
        assert sessions.delete(REPO, "s1") is False
        assert sessions.list_sessions(REPO) == []


class TestCredentialStore:
    def test_save_and_get(self, tmp_path: Path) -> None:
        store = CredentialStore(tmp_path / "credentials")
        store.save("acme/widgets", "ghp_secret")

        assert store.get("acme/widgets") == "ghp_secret"
        path = tmp_path / "credentials" / "acme_widgets.json"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        raw = json.loads(path.read_text())
        assert raw["repository"] == "acme/widgets"
        assert "updatedAt" in raw

    def test_missing_and_corrupt(self, tmp_path: Path) -> None:
        store = CredentialStore(tmp_path / "credentials")
        assert store.get("acme/other") is None
        store.root.mkdir(parents=True)
        (store.root / "acme_broken.json").write_text("{nope")
        assert store.get("acme/broken") is None

    def test_list_and_delete(self, tmp_path: Path) -> None:
        store = CredentialStore(tmp_path / "credentials")
        store.save("acme/a", "t1")
        store.save("acme/b", "t2")
        assert store.list_repositories() == ["acme/a", "acme/b"]
        assert store.delete("acme/a") is True
        assert store.delete("acme/a") is False
        assert store.list_repositories() == ["acme/b"]

    def test_rejects_malformed_repository(self, tmp_path: Path) -> None:
        with pytest.raises(RepositoryFormatError):
            CredentialStore(tmp_path).save("not-a-repo", "t")
