"""Isolated working copies: shared clones plus one git worktree per thread."""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from pathlib import Path

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from codethreads.errors import TransportError
from codethreads.protocol.io import safe_filename
from codethreads.protocol.models import RepositoryRef

log = logging.getLogger(__name__)


def _git(args: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=2.0, min=1.0, max=10.0),
    retry=retry_if_exception_type(subprocess.CalledProcessError),
    reraise=True,
)
def _git_network(args: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
    """Clone/fetch with backoff; remotes flake more than local plumbing."""
    return _git(args, cwd)


def _prune_worktrees(repo_root: Path) -> None:
    """Run ``git worktree prune`` to clean up stale bookkeeping entries."""
    try:
        _git(["worktree", "prune"], repo_root)
    except subprocess.CalledProcessError as exc:
        log.warning("git worktree prune failed: %s", exc.stderr)


def _delete_branch(repo_root: Path, branch_name: str) -> None:
    try:
        _git(["branch", "-D", branch_name], repo_root)
    except subprocess.CalledProcessError:
        log.debug("Branch %s not deleted (may not exist)", branch_name)


class GitWorkingCopies:
    """Shared clones under ``repositories/`` and per-thread worktrees under ``worktrees/``."""

    def __init__(
        self,
        repositories_root: Path,
        worktrees_root: Path,
        *,
        clone_url_template: str = "https://github.com/{full_name}.git",
    ) -> None:
        self.repositories_root = repositories_root
        self.worktrees_root = worktrees_root
        self.clone_url_template = clone_url_template

    def repository_path(self, repository: RepositoryRef) -> Path:
        return self.repositories_root / repository.org / repository.name

    def ensure(self, repository: RepositoryRef) -> Path:
        """Clone the repository, or fetch if a clone is already present."""
        path = self.repository_path(repository)
        try:
            if (path / ".git").exists():
                _git_network(["fetch", "--prune", "origin"], path)
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                url = self.clone_url_template.format(full_name=repository.full_name)
                _git_network(["clone", url, str(path)], path.parent)
        except subprocess.CalledProcessError as exc:
            raise TransportError(
                f"Could not prepare {repository.full_name}",
                exit_code=exc.returncode,
                stderr=exc.stderr or "",
            ) from exc
        return path

    def default_branch(self, repo_root: Path) -> str:
        try:
            out = _git(["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], repo_root)
        except subprocess.CalledProcessError:
            return "HEAD"
        return out.stdout.strip() or "HEAD"

    def create_isolated_copy(self, repo_root: Path, owner_name: str, key: str | None = None) -> Path:
        """Add a worktree on a fresh ``worker-<owner>-<ts>`` branch.

        Falls back to the shared checkout when the worktree cannot be created.
        """
        if not (repo_root / ".git").exists():
            log.warning("No .git found in %s, using the shared checkout", repo_root)
            return repo_root

        path = self.worktrees_root / safe_filename(key or owner_name)
        if path.exists():
            return path
        path.parent.mkdir(parents=True, exist_ok=True)
        branch_name = f"worker-{owner_name}-{int(time.time())}"
        base = self.default_branch(repo_root)

        _prune_worktrees(repo_root)
        try:
            _git(["worktree", "add", "-b", branch_name, str(path), base], repo_root)
        except subprocess.CalledProcessError as exc:
            log.warning("git worktree add %s failed: %s", path.name, exc.stderr)
            _delete_branch(repo_root, branch_name)
            try:
                _git(["worktree", "add", "-b", branch_name, str(path), base], repo_root)
            except subprocess.CalledProcessError as retry_exc:
                log.warning(
                    "Falling back to shared checkout for %s: %s", owner_name, retry_exc.stderr
                )
                return repo_root
        log.info("Created worktree %s on branch %s", path, branch_name)
        return path

    def remove(self, isolated_path: Path, repo_root: Path | None = None) -> None:
        """Remove a worktree; deletes the directory directly if git refuses."""
        if repo_root is not None and isolated_path.resolve() == repo_root.resolve():
            return
        if not isolated_path.exists():
            if repo_root is not None:
                _prune_worktrees(repo_root)
            return
        cwd = repo_root if repo_root is not None else isolated_path.parent
        try:
            _git(["worktree", "remove", "--force", str(isolated_path)], cwd)
        except subprocess.CalledProcessError as exc:
            log.warning("git worktree remove %s failed: %s", isolated_path, exc.stderr)
            shutil.rmtree(isolated_path, ignore_errors=True)
        if repo_root is not None:
            _prune_worktrees(repo_root)

    def is_registered(self, repo_root: Path, isolated_path: Path) -> bool:
        """Whether ``git worktree list`` in ``repo_root`` knows ``isolated_path``."""
        try:
            out = _git(["worktree", "list", "--porcelain"], repo_root)
        except (subprocess.CalledProcessError, OSError) as exc:
            stderr = getattr(exc, "stderr", "") or ""
            raise TransportError(
                f"git worktree list failed in {repo_root}", stderr=str(stderr)
            ) from exc
        target = isolated_path.resolve()
        for line in out.stdout.splitlines():
            if line.startswith("worktree ") and Path(line[len("worktree "):]).resolve() == target:
                return True
        return False
