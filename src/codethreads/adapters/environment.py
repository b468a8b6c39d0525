"""Isolated environment provider backed by the ``devcontainer`` CLI."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from codethreads.adapters.transport import CommandResult, SubprocessTransport, maybe_await
from codethreads.config.schema import EnvironmentConfig
from codethreads.errors import TransportError

log = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Awaitable[None] | None]

_LINE_COMMENT_RE = re.compile(r'("(?:\\.|[^"\\])*")|//[^\n]*')
_BLOCK_COMMENT_RE = re.compile(r'("(?:\\.|[^"\\])*")|/\*[\s\S]*?\*/')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


@dataclass(slots=True)
class EnvironmentConfigCheck:
    exists: bool
    has_required_feature: bool = False
    config_path: str | None = None


@dataclass(slots=True)
class EnvironmentStartResult:
    started: bool
    handle: str | None = None
    error: str | None = None


class EnvironmentProvider(Protocol):
    def check_config(self, path: str) -> EnvironmentConfigCheck: ...

    async def check_runtime_available(self) -> bool: ...

    async def start(
        self,
        path: str,
        credentials: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> EnvironmentStartResult: ...

    async def exec_in(
        self, path: str, command: Sequence[str], credentials: str | None = None
    ) -> CommandResult: ...

    def exec_command(self, path: str, command: Sequence[str]) -> list[str]: ...

    def exec_env(self, credentials: str | None) -> dict[str, str]: ...


def _keep_strings(match: re.Match[str]) -> str:
    return match.group(1) or ""


def load_jsonc(text: str) -> Any:
    """Parse JSON with ``//`` and ``/* */`` comments and trailing commas."""
    stripped = _BLOCK_COMMENT_RE.sub(_keep_strings, text)
    stripped = _LINE_COMMENT_RE.sub(_keep_strings, stripped)
    stripped = _TRAILING_COMMA_RE.sub(r"\1", stripped)
    return json.loads(stripped)


class DevcontainerProvider:
    """Starts and executes inside a dev container for a working copy."""

    def __init__(
        self,
        transport: SubprocessTransport | None = None,
        config: EnvironmentConfig | None = None,
    ) -> None:
        self.transport = transport or SubprocessTransport()
        self.config = config or EnvironmentConfig()

    def check_config(self, path: str) -> EnvironmentConfigCheck:
        root = Path(path)
        for candidate in (root / ".devcontainer" / "devcontainer.json", root / ".devcontainer.json"):
            if not candidate.is_file():
                continue
            try:
                raw = load_jsonc(candidate.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                log.warning("Could not parse %s: %s", candidate, exc)
                return EnvironmentConfigCheck(exists=True, config_path=str(candidate))
            features = raw.get("features") if isinstance(raw, dict) else None
            has_feature = isinstance(features, dict) and any(
                key.startswith(prefix)
                for key in features
                for prefix in self.config.required_feature_prefixes
            )
            return EnvironmentConfigCheck(
                exists=True, has_required_feature=has_feature, config_path=str(candidate)
            )
        return EnvironmentConfigCheck(exists=False)

    async def check_runtime_available(self) -> bool:
        try:
            result = await self.transport.run([self.config.runtime_binary, "--version"])
        except TransportError as exc:
            log.info("Container runtime CLI unavailable: %s", exc)
            return False
        return result.ok

    def exec_env(self, credentials: str | None) -> dict[str, str]:
        env = {"DOCKER_DEFAULT_PLATFORM": self.config.docker_platform}
        if credentials:
            env["GH_TOKEN"] = credentials
            env["GITHUB_TOKEN"] = credentials
        return env

    def exec_command(self, path: str, command: Sequence[str]) -> list[str]:
        return [self.config.runtime_binary, "exec", "--workspace-folder", path, *command]

    async def start(
        self,
        path: str,
        credentials: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> EnvironmentStartResult:
        outcome: dict[str, Any] = {}

        async def _on_line(line: str) -> None:
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict) and "outcome" in data:
                outcome.update(data)
                return
            if on_progress is None:
                return
            text = data.get("text") if isinstance(data, dict) else line
            if isinstance(text, str) and text.strip():
                await maybe_await(on_progress(text.strip()))

        argv = [
            self.config.runtime_binary,
            "up",
            "--workspace-folder",
            path,
            "--log-level",
            "info",
            "--log-format",
            "json",
        ]
        try:
            result = await self.transport.stream(
                argv, on_line=_on_line, cwd=path, env=self.exec_env(credentials)
            )
        except TransportError as exc:
            return EnvironmentStartResult(started=False, error=str(exc))

        if result.ok and outcome.get("outcome", "success") == "success":
            handle = outcome.get("containerId")
            log.info("Environment started for %s (container=%s)", path, handle)
            return EnvironmentStartResult(started=True, handle=handle)
        error = outcome.get("message") or outcome.get("description") or result.stderr
        return EnvironmentStartResult(
            started=False, error=error or f"exit code {result.exit_code}"
        )

    async def exec_in(
        self, path: str, command: Sequence[str], credentials: str | None = None
    ) -> CommandResult:
        return await self.transport.run(
            self.exec_command(path, command), cwd=path, env=self.exec_env(credentials)
        )
