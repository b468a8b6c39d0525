"""Tests for codethreads.workspace: git working copies and worker names."""

from __future__ import annotations

import random
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from codethreads.errors import TransportError
from codethreads.protocol.models import RepositoryRef
from codethreads.workspace.names import ADJECTIVES, ANIMALS, generate_worker_name
from codethreads.workspace.worktree import GitWorkingCopies, _git_network

RUN = "codethreads.workspace.worktree.subprocess.run"


def _completed(stdout: str = "") -> MagicMock:
    result = MagicMock()
    result.stdout = stdout
    result.returncode = 0
    return result


@pytest.fixture
def copies(tmp_path: Path) -> GitWorkingCopies:
    return GitWorkingCopies(tmp_path / "repositories", tmp_path / "worktrees")


@pytest.fixture
def repo_root(copies: GitWorkingCopies) -> Path:
    root = copies.repository_path(RepositoryRef("acme", "widgets"))
    (root / ".git").mkdir(parents=True)
    return root


class TestEnsure:
    @patch(RUN)
    def test_clones_missing_repository(self, mock_run: MagicMock, copies: GitWorkingCopies) -> None:
        mock_run.return_value = _completed()
        path = copies.ensure(RepositoryRef("acme", "widgets"))

        assert path == copies.repositories_root / "acme" / "widgets"
        mock_run.assert_called_once_with(
            ["git", "clone", "https://github.com/acme/widgets.git", str(path)],
            cwd=path.parent,
            check=True,
            capture_output=True,
            text=True,
        )

    @patch(RUN)
    def test_fetches_existing_clone(self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path) -> None:
        mock_run.return_value = _completed()
        copies.ensure(RepositoryRef("acme", "widgets"))
        mock_run.assert_called_once_with(
            ["git", "fetch", "--prune", "origin"],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    @patch(RUN)
    def test_retries_then_raises_transport_error(self, mock_run: MagicMock, copies: GitWorkingCopies) -> None:
        mock_run.side_effect = subprocess.CalledProcessError(128, ["git"], stderr="network down")
        with patch.object(_git_network.retry, "sleep", lambda _: None):
            with pytest.raises(TransportError) as excinfo:
                copies.ensure(RepositoryRef("acme", "widgets"))
        assert mock_run.call_count == 3
        assert excinfo.value.stderr == "network down"


class TestCreateIsolatedCopy:
    @patch(RUN)
    def test_adds_worktree_on_new_branch(
        self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path
    ) -> None:
        def _run(argv, **kwargs):  # type: ignore[no-untyped-def]
            if argv[1] == "symbolic-ref":
                return _completed("origin/main\n")
            return _completed()

        mock_run.side_effect = _run
        path = copies.create_isolated_copy(repo_root, "calm-otter", "thread/42")

        assert path == copies.worktrees_root / "thread_42"
        add_calls = [c for c in mock_run.call_args_list if c.args[0][1:3] == ["worktree", "add"]]
        assert len(add_calls) == 1
        argv = add_calls[0].args[0]
        assert argv[3] == "-b"
        assert argv[4].startswith("worker-calm-otter-")
        assert argv[5:] == [str(path), "origin/main"]

    @patch(RUN)
    def test_falls_back_to_shared_checkout(
        self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path
    ) -> None:
        def _run(argv, **kwargs):  # type: ignore[no-untyped-def]
            if argv[1:3] == ["worktree", "add"]:
                raise subprocess.CalledProcessError(128, argv, stderr="locked")
            return _completed()

        mock_run.side_effect = _run
        assert copies.create_isolated_copy(repo_root, "calm-otter", "t1") == repo_root
        branch_deletes = [c for c in mock_run.call_args_list if c.args[0][1:3] == ["branch", "-D"]]
        assert len(branch_deletes) == 1

    def test_no_git_dir_uses_checkout(self, copies: GitWorkingCopies, tmp_path: Path) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        assert copies.create_isolated_copy(plain, "x") == plain

    @patch(RUN)
    def test_existing_path_reused(self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path) -> None:
        existing = copies.worktrees_root / "t1"
        existing.mkdir(parents=True)
        assert copies.create_isolated_copy(repo_root, "x", "t1") == existing
        mock_run.assert_not_called()


class TestRemoveAndRegistration:
    @patch(RUN)
    def test_remove_worktree(self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path) -> None:
        mock_run.return_value = _completed()
        isolated = copies.worktrees_root / "t1"
        isolated.mkdir(parents=True)

        copies.remove(isolated, repo_root)

        assert mock_run.call_args_list[0].args[0] == [
            "git",
            "worktree",
            "remove",
            "--force",
            str(isolated),
        ]
        assert mock_run.call_args_list[-1].args[0] == ["git", "worktree", "prune"]

    @patch(RUN)
    def test_remove_falls_back_to_rmtree(
        self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path
    ) -> None:
        def _run(argv, **kwargs):  # type: ignore[no-untyped-def]
            if argv[1:3] == ["worktree", "remove"]:
                raise subprocess.CalledProcessError(1, argv, stderr="not a worktree")
            return _completed()

        mock_run.side_effect = _run
        isolated = copies.worktrees_root / "t1"
        isolated.mkdir(parents=True)
        (isolated / "file.txt").write_text("x")

        copies.remove(isolated, repo_root)

        assert not isolated.exists()

    @patch(RUN)
    def test_remove_shared_checkout_is_noop(
        self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path
    ) -> None:
        copies.remove(repo_root, repo_root)
        mock_run.assert_not_called()
        assert repo_root.exists()

    @patch(RUN)
    def test_is_registered(self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path) -> None:
        isolated = copies.worktrees_root / "t1"
        isolated.mkdir(parents=True)
        mock_run.return_value = _completed(
            f"worktree {repo_root}\nHEAD abc\nbranch refs/heads/main\n\n"
            f"worktree {isolated}\nHEAD def\nbranch refs/heads/worker-x-1\n"
        )
        assert copies.is_registered(repo_root, isolated) is True
        assert copies.is_registered(repo_root, copies.worktrees_root / "t2") is False

    @patch(RUN)
    def test_is_registered_failure(self, mock_run: MagicMock, copies: GitWorkingCopies, repo_root: Path) -> None:
        mock_run.side_effect = FileNotFoundError("git")
        with pytest.raises(TransportError):
            copies.is_registered(repo_root, repo_root)


class TestWorkerNames:
    def test_adjective_animal(self) -> None:
        name = generate_worker_name(random.Random(7))
        adjective, animal = name.split("-")
        assert adjective in ADJECTIVES
        assert animal in ANIMALS

    def test_deterministic_with_seed(self) -> None:
        assert generate_worker_name(random.Random(1)) == generate_worker_name(random.Random(1))
