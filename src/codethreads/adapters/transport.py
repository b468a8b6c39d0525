"""Execution transport: run external commands, optionally streaming stdout."""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from codethreads.errors import TransportError

log = logging.getLogger(__name__)

# Nested-session markers inherited from a parent assistant process make the
# child refuse to start or attach to the wrong session.
STRIP_ENV_VARS = frozenset(
    {"CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL", "CLAUDE_CODE_PACKAGE_DIR"}
)

STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_CHARS = 8000

LineCallback = Callable[[str], Awaitable[None] | None]
StartCallback = Callable[[asyncio.subprocess.Process], Awaitable[None] | None]


@dataclass(slots=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def subprocess_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Current environment minus nested-session markers, plus ``extra``."""
    env = {k: v for k, v in os.environ.items() if k not in STRIP_ENV_VARS}
    if extra:
        env.update(extra)
    return env


async def maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class SubprocessTransport:
    """Runs commands with ``asyncio.create_subprocess_exec``."""

    async def _spawn(
        self,
        argv: Sequence[str],
        cwd: str | None,
        env: Mapping[str, str] | None,
    ) -> asyncio.subprocess.Process:
        if not argv:
            raise TransportError("Empty command")
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=subprocess_env(env),
                limit=STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise TransportError(f"Could not start {argv[0]}: {exc}", exit_code=None) from exc

    async def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Wait for the command to finish and return its full output."""
        process = await self._spawn(argv, cwd, env)
        stdout, stderr = await process.communicate()
        return CommandResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def stream(
        self,
        argv: Sequence[str],
        *,
        on_line: LineCallback,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        on_start: StartCallback | None = None,
    ) -> CommandResult:
        """Run the command, awaiting ``on_line`` for each stdout line in order.

        Stderr is collected concurrently and returned as a tail. Stdout is not
        accumulated in the result; callers keep what they need in ``on_line``.
        """
        process = await self._spawn(argv, cwd, env)
        log.debug("Started %s (pid=%s) in %s", argv[0], process.pid, cwd)
        if on_start is not None:
            await maybe_await(on_start(process))

        stderr_task = asyncio.create_task(self._collect_stderr(process.stderr))
        try:
            await self._pump_stdout(process.stdout, on_line)
            exit_code = await process.wait()
        except BaseException:
            if process.returncode is None:
                await self.terminate(process)
            raise
        finally:
            stderr = await stderr_task
        return CommandResult(exit_code=exit_code, stderr=stderr)

    async def _pump_stdout(
        self,
        stream: asyncio.StreamReader | None,
        on_line: LineCallback,
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except (asyncio.LimitOverrunError, ValueError) as exc:
                raise TransportError(f"Unreadable output stream: {exc}") from exc
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            await maybe_await(on_line(text))

    async def _collect_stderr(self, stream: asyncio.StreamReader | None) -> str:
        if stream is None:
            return ""
        tail = ""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            tail = (tail + chunk.decode("utf-8", errors="replace"))[-STDERR_TAIL_CHARS:]
        return tail.strip()

    async def terminate(self, process: asyncio.subprocess.Process, *, grace: float = 5.0) -> bool:
        """SIGTERM, then SIGKILL after ``grace`` seconds. Returns True if it had to kill."""
        if process.returncode is not None:
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
            return False
        except TimeoutError:
            log.warning("Process %s ignored SIGTERM; killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return False
            await process.wait()
            return True
