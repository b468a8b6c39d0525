"""Per-thread worker: runs the assistant CLI and classifies its stream.

A worker owns one thread's conversational session. ``submit`` launches the
assistant subprocess in the thread's isolated working copy (optionally inside
an isolated environment), forwards progress lines in stream order, and returns
either the final answer or a :class:`RateLimitCondition`.

States::

    idle --submit--> executing --done--> idle
                              \\--marker--> rate_limited
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

from codethreads.adapters.environment import EnvironmentProvider
from codethreads.adapters.formatting import format_progress, strip_ansi
from codethreads.adapters.stream_classifier import StreamClassifier
from codethreads.adapters.transport import SubprocessTransport, maybe_await
from codethreads.config.schema import CodethreadsConfig
from codethreads.errors import (
    ConfigurationError,
    EnvironmentStartError,
    PersistenceError,
    TransportError,
    WorkerBusyError,
)
from codethreads.protocol.models import (
    IsolatedEnvironmentConfig,
    RepositoryRef,
    ThreadRecord,
    utc_now_iso,
)
from codethreads.store import audit as actions
from codethreads.store.state import StateStores
from codethreads.workspace.names import generate_worker_name

log = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Awaitable[None] | None]
WorkerState = Literal["idle", "executing", "rate_limited"]

NO_RESPONSE_TEXT = "The assistant finished without producing a response."
INTERRUPTED_TEXT = "⛔ Execution interrupted.\n💡 Send new instructions to continue."


@dataclass(slots=True)
class FinalAnswer:
    text: str
    session_id: str | None = None
    interrupted: bool = False


@dataclass(slots=True)
class RateLimitCondition:
    timestamp: int
    retry_at: int
    text: str = ""


SubmitOutcome = FinalAnswer | RateLimitCondition


class Worker:
    """One worker per thread; not shared between threads."""

    def __init__(
        self,
        thread_id: str,
        *,
        stores: StateStores,
        config: CodethreadsConfig,
        name: str | None = None,
        transport: SubprocessTransport | None = None,
        environment: EnvironmentProvider | None = None,
    ) -> None:
        self.thread_id = thread_id
        self.name = name or generate_worker_name()
        self.stores = stores
        self.config = config
        self.transport = transport or SubprocessTransport()
        self.environment = environment

        self.repository: RepositoryRef | None = None
        self.repository_local_path: str | None = None
        self.isolated_working_copy_path: str | None = None
        self.isolated_environment = IsolatedEnvironmentConfig(
            skip_permission_prompts=config.assistant.skip_permission_prompts,
        )
        self.session_id: str | None = None
        self.is_executing = False
        self.rate_limit: RateLimitCondition | None = None

        self._process: asyncio.subprocess.Process | None = None
        self._run_seq = 0
        self._stopped_runs: set[int] = set()
        self._environment_ready = False

    # ------------------------------------------------------------------
    # Construction from / to persisted state
    # ------------------------------------------------------------------

    @classmethod
    def from_record(
        cls,
        record: ThreadRecord,
        *,
        stores: StateStores,
        config: CodethreadsConfig,
        transport: SubprocessTransport | None = None,
        environment: EnvironmentProvider | None = None,
    ) -> Worker:
        worker = cls(
            record.thread_id,
            stores=stores,
            config=config,
            name=record.worker_name,
            transport=transport,
            environment=environment,
        )
        worker.repository = record.repository
        worker.repository_local_path = record.repository_local_path
        worker.isolated_working_copy_path = record.isolated_working_copy_path
        if record.isolated_environment is not None:
            env = record.isolated_environment
            worker.isolated_environment = IsolatedEnvironmentConfig(
                use_isolated_env=env.use_isolated_env,
                skip_permission_prompts=env.skip_permission_prompts,
                has_config_file=env.has_config_file,
                has_required_feature=env.has_required_feature,
                environment_handle=env.environment_handle,
                started=env.started,
            )
        worker.session_id = record.session_id
        if record.rate_limit_timestamp is not None:
            worker.rate_limit = RateLimitCondition(
                timestamp=record.rate_limit_timestamp,
                retry_at=record.rate_limit_timestamp + config.rate_limit.cooldown_seconds,
            )
        return worker

    def new_record(self) -> ThreadRecord:
        record = ThreadRecord(thread_id=self.thread_id)
        self.apply_to(record)
        return record

    def apply_to(self, record: ThreadRecord) -> None:
        """Copy the worker's configuration onto ``record`` (rate-limit fields untouched)."""
        record.worker_name = self.name
        record.repository = self.repository
        record.repository_local_path = self.repository_local_path
        record.isolated_working_copy_path = self.isolated_working_copy_path
        record.isolated_environment = self.isolated_environment
        record.session_id = self.session_id
        record.touch()

    def configure(
        self,
        repository: RepositoryRef,
        repository_local_path: str,
        isolated_working_copy_path: str,
    ) -> None:
        self.repository = repository
        self.repository_local_path = repository_local_path
        self.isolated_working_copy_path = isolated_working_copy_path
        self.session_id = None
        self._environment_ready = False

    @property
    def state(self) -> WorkerState:
        if self.is_executing:
            return "executing"
        if self.rate_limit is not None:
            return "rate_limited"
        return "idle"

    def _persist(self) -> None:
        try:
            self.stores.threads.update(self.thread_id, self.apply_to)
        except PersistenceError as exc:
            log.error("Could not persist worker state for %s: %s", self.thread_id, exc)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, message: str, on_progress: ProgressCallback | None = None) -> SubmitOutcome:
        """Run one assistant turn for ``message``.

        Raises:
            WorkerBusyError: a submission is already running.
            ConfigurationError: no repository / working copy configured.
            EnvironmentStartError: the isolated environment failed to start.
            TransportError: the subprocess failed or its stream was unreadable.
        """
        if self.is_executing:
            raise WorkerBusyError(self.thread_id, self.name)
        if self.repository is None or not self.isolated_working_copy_path:
            raise ConfigurationError(
                f"Thread {self.thread_id} has no repository configured",
                details={"thread_id": self.thread_id},
            )

        self.is_executing = True
        self._run_seq += 1
        run_seq = self._run_seq
        try:
            await self._ensure_environment(on_progress)
            if run_seq in self._stopped_runs:
                return FinalAnswer(text=INTERRUPTED_TEXT, session_id=self.session_id, interrupted=True)
            return await self._execute(message, on_progress, run_seq)
        finally:
            self._stopped_runs.discard(run_seq)
            if self._run_seq == run_seq:
                self.is_executing = False
                self._process = None

    async def stop(self) -> bool:
        """Terminate the running subprocess; returns False if nothing was running."""
        if not self.is_executing:
            return False
        self._stopped_runs.add(self._run_seq)
        process = self._process
        killed = False
        if process is not None:
            killed = await self.transport.terminate(
                process, grace=self.config.assistant.terminate_grace_seconds
            )
        self.is_executing = False
        self._process = None
        log.info("Stopped worker %s for thread %s (killed=%s)", self.name, self.thread_id, killed)
        self.stores.audit.record(
            self.thread_id,
            actions.EXECUTION_INTERRUPTED,
            {"worker": self.name, "forced": killed},
        )
        if self.repository is not None and self.session_id:
            try:
                self.stores.sessions.append_event(
                    self.repository,
                    self.session_id,
                    {"type": "interrupted", "timestamp": utc_now_iso(), "forced": killed},
                )
            except PersistenceError as exc:
                log.warning("Could not record interruption for %s: %s", self.thread_id, exc)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_environment(self, on_progress: ProgressCallback | None) -> None:
        env = self.isolated_environment
        if not env.use_isolated_env or self._environment_ready:
            return
        if self.environment is None:
            raise ConfigurationError(
                f"Thread {self.thread_id} requests an isolated environment but none is available"
            )
        path = self.isolated_working_copy_path or ""
        progress = None
        if on_progress is not None:
            progress = functools.partial(self._emit, on_progress)
        result = await self.environment.start(path, self._credentials(), progress)
        if not result.started:
            raise EnvironmentStartError(
                f"Isolated environment failed to start: {result.error}",
                details={"thread_id": self.thread_id, "path": path},
            )
        env.started = True
        env.environment_handle = result.handle
        self._environment_ready = True
        self._persist()

    def _credentials(self) -> str | None:
        if self.repository is None:
            return None
        return self.stores.credentials.get(self.repository.full_name)

    def build_command(self, message: str) -> tuple[list[str], dict[str, str]]:
        assistant = self.config.assistant
        args = ["-p", message, "--output-format", "stream-json", "--verbose"]
        if self.session_id:
            args += ["--resume", self.session_id]
        if self.isolated_environment.skip_permission_prompts:
            args.append("--dangerously-skip-permissions")
        if assistant.append_system_prompt:
            args += ["--append-system-prompt", assistant.append_system_prompt]
        if assistant.model:
            args += ["--model", assistant.model]
        args += list(assistant.extra_args)
        command = [assistant.binary, *args]

        if self.isolated_environment.use_isolated_env and self.environment is not None:
            path = self.isolated_working_copy_path or ""
            return (
                self.environment.exec_command(path, command),
                self.environment.exec_env(self._credentials()),
            )
        return command, {}

    async def _execute(
        self, message: str, on_progress: ProgressCallback | None, run_seq: int
    ) -> SubmitOutcome:
        classifier = StreamClassifier(
            worktree=self.isolated_working_copy_path,
            formatting=self.config.formatting,
        )
        max_length = self.config.formatting.max_progress_length

        async def _on_line(line: str) -> None:
            display = classifier.feed_line(line)
            if display and on_progress is not None:
                await self._emit(on_progress, format_progress(display, max_length))

        async def _on_start(process: asyncio.subprocess.Process) -> None:
            if self._run_seq == run_seq:
                self._process = process
            if run_seq in self._stopped_runs:
                await self.transport.terminate(
                    process, grace=self.config.assistant.terminate_grace_seconds
                )

        argv, env = self.build_command(message)
        log.info("Worker %s running turn for thread %s", self.name, self.thread_id)
        result = await self.transport.stream(
            argv,
            on_line=_on_line,
            cwd=self.isolated_working_copy_path,
            env=env,
            on_start=_on_start,
        )

        session_id = classifier.session_id or self.session_id
        # A stopped run can finish after a newer one started; leave its state alone.
        if self._run_seq == run_seq:
            self.session_id = session_id
            self._persist()
        self._save_transcript(classifier, session_id)

        if run_seq in self._stopped_runs:
            return FinalAnswer(text=INTERRUPTED_TEXT, session_id=session_id, interrupted=True)

        timestamp = classifier.rate_limit_timestamp
        if timestamp is not None:
            return self._enter_rate_limit(timestamp, classifier.final_text)

        if result.exit_code != 0:
            raise TransportError(
                f"Assistant exited with code {result.exit_code}",
                exit_code=result.exit_code,
                stderr=result.stderr,
                details={"thread_id": self.thread_id},
            )

        self.rate_limit = None
        text = strip_ansi(classifier.final_text).strip() or NO_RESPONSE_TEXT
        return FinalAnswer(text=text, session_id=self.session_id)

    def _enter_rate_limit(self, timestamp: int, text: str) -> RateLimitCondition:
        condition = RateLimitCondition(
            timestamp=timestamp,
            retry_at=timestamp + self.config.rate_limit.cooldown_seconds,
            text=text,
        )
        self.rate_limit = condition
        auto_resume = self.config.rate_limit.auto_resume_default

        def _mark(record: ThreadRecord) -> None:
            record.set_rate_limit(timestamp, auto_resume=auto_resume)
            record.touch()

        try:
            self.stores.threads.update(self.thread_id, _mark)
        except PersistenceError as exc:
            log.error("Could not persist rate limit for %s: %s", self.thread_id, exc)
        log.warning(
            "Thread %s hit the usage limit (timestamp=%d, retry_at=%d)",
            self.thread_id,
            timestamp,
            condition.retry_at,
        )
        return condition

    def _save_transcript(self, classifier: StreamClassifier, session_id: str | None) -> None:
        if self.repository is None or not session_id or not classifier.raw_lines:
            return
        try:
            self.stores.sessions.append(self.repository, session_id, classifier.raw_lines)
        except PersistenceError as exc:
            log.warning("Could not save transcript for %s: %s", self.thread_id, exc)

    async def _emit(self, on_progress: ProgressCallback, text: str) -> None:
        try:
            await maybe_await(on_progress(text))
        except Exception as exc:
            log.warning("Progress callback failed for thread %s: %s", self.thread_id, exc)
