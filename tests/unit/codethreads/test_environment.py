"""Tests for the devcontainer-backed environment provider."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from codethreads.adapters.environment import DevcontainerProvider, load_jsonc
from codethreads.adapters.transport import CommandResult
from codethreads.errors import TransportError


def _write_config(root: Path, body: str, *, nested: bool = True) -> Path:
    path = root / ".devcontainer" / "devcontainer.json" if nested else root / ".devcontainer.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    return path


class TestLoadJsonc:
    def test_comments_and_trailing_commas(self) -> None:
        text = """
        {
          // line comment
          "name": "dev", /* block */
          "url": "https://example.com//not-a-comment",
          "features": {"a": {},},
        }
        """
        assert load_jsonc(text) == {
            "name": "dev",
            "url": "https://example.com//not-a-comment",
            "features": {"a": {}},
        }


class TestCheckConfig:
    def test_missing(self, tmp_path: Path) -> None:
        check = DevcontainerProvider().check_config(str(tmp_path))
        assert check.exists is False
        assert check.has_required_feature is False

    def test_required_feature_present(self, tmp_path: Path) -> None:
        path = _write_config(
            tmp_path,
            json.dumps({"features": {"ghcr.io/anthropics/devcontainer-features/claude-code:1": {}}}),
        )
        check = DevcontainerProvider().check_config(str(tmp_path))
        assert check.exists is True
        assert check.has_required_feature is True
        assert check.config_path == str(path)

    def test_root_level_file_without_feature(self, tmp_path: Path) -> None:
        _write_config(tmp_path, '{"features": {"ghcr.io/devcontainers/features/node:1": {}}}', nested=False)
        check = DevcontainerProvider().check_config(str(tmp_path))
        assert check.exists is True
        assert check.has_required_feature is False

    def test_unparseable_still_exists(self, tmp_path: Path) -> None:
        _write_config(tmp_path, "{oops")
        check = DevcontainerProvider().check_config(str(tmp_path))
        assert check.exists is True
        assert check.has_required_feature is False


class FakeRunner:
    def __init__(self, lines: list[str] | None = None, result: CommandResult | None = None) -> None:
        self.lines = lines or []
        self.result = result or CommandResult(exit_code=0)
        self.calls: list[dict] = []
        self.error: Exception | None = None

    async def stream(self, argv, *, on_line, cwd=None, env=None, on_start=None):  # type: ignore[no-untyped-def]
        self.calls.append({"argv": argv, "cwd": cwd, "env": env})
        if self.error is not None:
            raise self.error
        for line in self.lines:
            await on_line(line)
        return self.result

    async def run(self, argv, *, cwd=None, env=None):  # type: ignore[no-untyped-def]
        self.calls.append({"argv": argv, "cwd": cwd, "env": env})
        if self.error is not None:
            raise self.error
        return self.result


class TestStart:
    @pytest.mark.asyncio
    async def test_success_reports_container(self) -> None:
        runner = FakeRunner(
            [
                json.dumps({"type": "text", "level": 2, "text": "Building image"}),
                "plain progress",
                json.dumps({"outcome": "success", "containerId": "c0ffee"}),
            ]
        )
        provider = DevcontainerProvider(runner)  # type: ignore[arg-type]
        progress: list[str] = []

        result = await provider.start("/w/t1", "tok", progress.append)

        assert result.started is True
        assert result.handle == "c0ffee"
        assert progress == ["Building image", "plain progress"]
        call = runner.calls[0]
        assert call["argv"] == [
            "devcontainer",
            "up",
            "--workspace-folder",
            "/w/t1",
            "--log-level",
            "info",
            "--log-format",
            "json",
        ]
        assert call["env"] == {
            "DOCKER_DEFAULT_PLATFORM": "linux/amd64",
            "GH_TOKEN": "tok",
            "GITHUB_TOKEN": "tok",
        }

    @pytest.mark.asyncio
    async def test_error_outcome(self) -> None:
        runner = FakeRunner(
            [json.dumps({"outcome": "error", "message": "daemon not running"})],
            CommandResult(exit_code=1),
        )
        result = await DevcontainerProvider(runner).start("/w")  # type: ignore[arg-type]
        assert result.started is False
        assert result.error == "daemon not running"

    @pytest.mark.asyncio
    async def test_spawn_failure(self) -> None:
        runner = FakeRunner()
        runner.error = TransportError("Could not start devcontainer")
        result = await DevcontainerProvider(runner).start("/w")  # type: ignore[arg-type]
        assert result.started is False
        assert "Could not start" in (result.error or "")


class TestExec:
    def test_exec_command(self) -> None:
        provider = DevcontainerProvider()
        assert provider.exec_command("/w", ["claude", "-p", "hi"]) == [
            "devcontainer",
            "exec",
            "--workspace-folder",
            "/w",
            "claude",
            "-p",
            "hi",
        ]

    def test_exec_env_without_credentials(self) -> None:
        assert DevcontainerProvider().exec_env(None) == {"DOCKER_DEFAULT_PLATFORM": "linux/amd64"}

    @pytest.mark.asyncio
    async def test_exec_in(self) -> None:
        runner = FakeRunner(result=CommandResult(exit_code=0, stdout="ok"))
        result = await DevcontainerProvider(runner).exec_in("/w", ["ls"])  # type: ignore[arg-type]
        assert result.stdout == "ok"
        assert runner.calls[0]["cwd"] == "/w"

    @pytest.mark.asyncio
    async def test_runtime_available(self) -> None:
        runner = FakeRunner()
        assert await DevcontainerProvider(runner).check_runtime_available() is True  # type: ignore[arg-type]
        runner.error = TransportError("missing")
        assert await DevcontainerProvider(runner).check_runtime_available() is False  # type: ignore[arg-type]
