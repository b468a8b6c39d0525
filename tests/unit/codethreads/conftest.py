"""Fixtures shared by the codethreads unit tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from codethreads.adapters.transport import CommandResult
from codethreads.config.schema import CodethreadsConfig, RunConfig
from codethreads.protocol.models import RepositoryRef
from codethreads.store.state import StateStores, open_stores


class FakeTransport:
    """Scripted stand-in for ``SubprocessTransport``.

    ``stream`` replays ``lines`` through ``on_line``; with ``hold`` set it then
    blocks until ``terminate`` is called or the event is set.
    """

    def __init__(
        self,
        lines: list[str] | None = None,
        *,
        exit_code: int = 0,
        stderr: str = "",
        hold: bool = False,
    ) -> None:
        self.lines = list(lines or [])
        self.exit_code = exit_code
        self.stderr = stderr
        self.hold = asyncio.Event() if hold else None
        self.started = asyncio.Event()
        self.stream_calls: list[dict[str, Any]] = []
        self.run_calls: list[list[str]] = []
        self.run_result = CommandResult(exit_code=0, stdout="ok")
        self.terminated = False

    async def stream(self, argv, *, on_line, cwd=None, env=None, on_start=None):  # type: ignore[no-untyped-def]
        self.stream_calls.append({"argv": list(argv), "cwd": cwd, "env": dict(env or {})})
        process = MagicMock()
        process.returncode = None
        if on_start is not None:
            await on_start(process)
        self.started.set()
        for line in self.lines:
            if self.terminated:
                break
            await on_line(line)
        if self.hold is not None and not self.terminated:
            await self.hold.wait()
        exit_code = -15 if self.terminated else self.exit_code
        return CommandResult(exit_code=exit_code, stderr=self.stderr)

    async def run(self, argv, *, cwd=None, env=None):  # type: ignore[no-untyped-def]
        self.run_calls.append(list(argv))
        return self.run_result

    async def terminate(self, process, *, grace: float = 5.0) -> bool:  # type: ignore[no-untyped-def]
        self.terminated = True
        if self.hold is not None:
            self.hold.set()
        return False


def assistant_text(text: str, session_id: str = "sess-1") -> str:
    return json.dumps(
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {"content": [{"type": "text", "text": text}]},
        }
    )


def tool_use(name: str, tool_input: dict[str, Any], tool_id: str = "tu-1") -> str:
    return json.dumps(
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}]
            },
        }
    )


def tool_result(content: Any, tool_id: str = "tu-1", is_error: bool = False) -> str:
    return json.dumps(
        {
            "type": "user",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": tool_id,
                        "content": content,
                        "is_error": is_error,
                    }
                ]
            },
        }
    )


def result_line(text: str, session_id: str = "sess-1", is_error: bool = False) -> str:
    return json.dumps(
        {
            "type": "result",
            "subtype": "success",
            "is_error": is_error,
            "result": text,
            "session_id": session_id,
        }
    )


@pytest.fixture
def config(tmp_path: Path) -> CodethreadsConfig:
    return CodethreadsConfig(run=RunConfig(base_dir=str(tmp_path / "state")))


@pytest.fixture
def stores(config: CodethreadsConfig) -> StateStores:
    return open_stores(config.base_path)


@pytest.fixture
def repository() -> RepositoryRef:
    return RepositoryRef(org="acme", name="widgets")


@pytest.fixture
def worktree_dir(tmp_path: Path) -> Path:
    path = tmp_path / "worktrees" / "thread-1"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    return FakeTransport


@pytest.fixture
def stream_lines() -> dict[str, Callable[..., str]]:
    """Builders for stream-json lines."""
    return {
        "assistant_text": assistant_text,
        "tool_use": tool_use,
        "tool_result": tool_result,
        "result": result_line,
    }
