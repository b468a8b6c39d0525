"""Process-wide worker registry and restart recovery.

The orchestrator maps thread ids to :class:`Worker` instances, routes inbound
messages, turns rate-limit conditions into prompts with an auto-resume timer,
and on startup rebuilds every active worker and re-arms pending timers from
the persisted thread records.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from codethreads.adapters.environment import DevcontainerProvider, EnvironmentProvider
from codethreads.adapters.transport import SubprocessTransport, maybe_await
from codethreads.config.schema import CodethreadsConfig
from codethreads.coordinator.rate_limit import AutoResumeScheduler, format_retry_time
from codethreads.coordinator.worker import FinalAnswer, RateLimitCondition, Worker
from codethreads.errors import (
    ConfigurationError,
    PersistenceError,
    ThreadsError,
    TransportError,
    WorkerNotFoundError,
)
from codethreads.protocol.locks import AsyncKeyedLock
from codethreads.protocol.models import (
    IsolatedEnvironmentConfig,
    QueuedMessage,
    RepositoryRef,
    ThreadRecord,
)
from codethreads.store import audit as actions
from codethreads.store.state import StateStores, open_stores
from codethreads.workspace.worktree import GitWorkingCopies

log = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Awaitable[None] | None]
AutoResumeCallback = Callable[[str, str], Awaitable[object] | object]

CHOICE_AUTO_RESUME = "auto_resume"
CHOICE_MANUAL_RESUME = "manual_resume"


@dataclass(slots=True)
class RateLimitPrompt:
    """Structured payload the chat transport renders as a choice."""

    thread_id: str
    timestamp: int
    retry_at: int
    auto_resume: bool
    text: str
    choices: tuple[str, ...] = (CHOICE_AUTO_RESUME, CHOICE_MANUAL_RESUME)


@dataclass(slots=True)
class QueuedNotice:
    thread_id: str
    message_id: str
    position: int
    reason: Literal["rate_limited", "busy"]
    text: str


RouteOutcome = FinalAnswer | RateLimitPrompt | QueuedNotice


class Orchestrator:
    """Owns ``thread_id -> Worker`` and every cross-worker concern."""

    def __init__(
        self,
        config: CodethreadsConfig,
        *,
        stores: StateStores | None = None,
        transport: SubprocessTransport | None = None,
        working_copies: GitWorkingCopies | None = None,
        environment: EnvironmentProvider | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.stores = stores or open_stores(config.base_path)
        self.transport = transport or SubprocessTransport()
        layout = self.stores.layout
        self.working_copies = working_copies or GitWorkingCopies(
            layout["repositories"], layout["worktrees"]
        )
        self.environment = environment or DevcontainerProvider(self.transport, config.environment)
        self.scheduler = AutoResumeScheduler(
            cooldown_seconds=config.rate_limit.cooldown_seconds, clock=clock
        )
        self.workers: dict[str, Worker] = {}
        self._locks = AsyncKeyedLock()
        self._clock = clock
        self._on_progress: ProgressCallback | None = None
        self._on_auto_resume: AutoResumeCallback | None = None
        self._auto_resuming: set[str] = set()

    # ------------------------------------------------------------------
    # Callback wiring
    # ------------------------------------------------------------------

    def set_progress_callback(self, callback: ProgressCallback | None) -> None:
        """Default progress sink for submissions routed without their own."""
        self._on_progress = callback

    def set_auto_resume_callback(self, callback: AutoResumeCallback | None) -> None:
        """Called as ``callback(thread_id, continuation_text)`` when a timer fires."""
        self._on_auto_resume = callback

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get_worker(self, thread_id: str) -> Worker | None:
        return self.workers.get(thread_id)

    def _require_worker(self, thread_id: str) -> Worker:
        worker = self.workers.get(thread_id)
        if worker is None:
            raise WorkerNotFoundError(thread_id)
        return worker

    def _new_worker(self, thread_id: str) -> Worker:
        return Worker(
            thread_id,
            stores=self.stores,
            config=self.config,
            transport=self.transport,
            environment=self.environment,
        )

    def _worker_from_record(self, record: ThreadRecord) -> Worker:
        return Worker.from_record(
            record,
            stores=self.stores,
            config=self.config,
            transport=self.transport,
            environment=self.environment,
        )

    def _load_record(self, thread_id: str) -> ThreadRecord | None:
        try:
            return self.stores.threads.load(thread_id)
        except PersistenceError as exc:
            log.warning("Thread record for %s is unreadable: %s", thread_id, exc)
            return None

    async def create_or_get_worker(self, thread_id: str) -> Worker:
        """Return the registered worker, creating and persisting one if needed."""
        async with self._locks.hold(thread_id):
            existing = self.workers.get(thread_id)
            if existing is not None:
                return existing

            record = self._load_record(thread_id)
            if record is not None and record.status == "active":
                worker = self._worker_from_record(record)
                log.info("Revived worker %s for thread %s", worker.name, thread_id)
            else:
                worker = self._new_worker(thread_id)
                self.stores.threads.create(worker.new_record())
                self.stores.audit.record(thread_id, actions.WORKER_CREATED, {"worker": worker.name})
                log.info("Created worker %s for thread %s", worker.name, thread_id)
            self.workers[thread_id] = worker
            return worker

    async def configure_repository(
        self,
        thread_id: str,
        repository: str | RepositoryRef,
        *,
        use_isolated_env: bool = False,
    ) -> Worker:
        """Point a thread at a repository and give it an isolated working copy."""
        worker = self._require_worker(thread_id)
        repo = repository if isinstance(repository, RepositoryRef) else RepositoryRef.parse(repository)
        async with self._locks.hold(thread_id):
            local = await asyncio.to_thread(self.working_copies.ensure, repo)
            isolated = await asyncio.to_thread(
                self.working_copies.create_isolated_copy, local, worker.name, thread_id
            )
            worker.configure(repo, str(local), str(isolated))

            env = IsolatedEnvironmentConfig(
                skip_permission_prompts=worker.isolated_environment.skip_permission_prompts,
            )
            if use_isolated_env:
                check = self.environment.check_config(str(isolated))
                if not check.exists:
                    raise ConfigurationError(
                        f"{repo.full_name} has no devcontainer configuration",
                        details={"thread_id": thread_id},
                    )
                if not await self.environment.check_runtime_available():
                    raise ConfigurationError("The container runtime CLI is not available")
                env.use_isolated_env = True
                env.has_config_file = check.exists
                env.has_required_feature = check.has_required_feature
            worker.isolated_environment = env
            self.stores.threads.update(thread_id, worker.apply_to)
            self.stores.audit.record(
                thread_id,
                actions.REPOSITORY_CONFIGURED,
                {
                    "repository": repo.full_name,
                    "isolated_path": str(isolated),
                    "use_isolated_env": use_isolated_env,
                },
            )
            return worker

    # ------------------------------------------------------------------
    # Message routing
    # ------------------------------------------------------------------

    async def route_message(
        self,
        thread_id: str,
        content: str,
        on_progress: ProgressCallback | None = None,
        *,
        message_id: str | None = None,
        author_id: str | None = None,
    ) -> RouteOutcome:
        """Deliver ``content`` to the thread's worker.

        While the thread is rate limited, or the worker is busy, a message
        carrying a ``message_id`` is queued instead and a
        :class:`QueuedNotice` is returned.
        """
        worker = self._require_worker(thread_id)
        self.stores.audit.record(
            thread_id,
            actions.MESSAGE_RECEIVED,
            {"message_id": message_id, "author_id": author_id, "length": len(content)},
        )

        record = self._load_record(thread_id)
        if (
            record is not None
            and record.rate_limit_timestamp is not None
            and thread_id not in self._auto_resuming
        ):
            timestamp = record.rate_limit_timestamp
            if not self.scheduler.is_due(timestamp):
                if message_id is not None:
                    return self._enqueue(thread_id, content, message_id, author_id, "rate_limited")
                return self._rate_limit_prompt(
                    thread_id, timestamp, bool(record.auto_resume_after_rate_limit)
                )
            await self.resume_manually(thread_id)

        if worker.is_executing and message_id is not None:
            return self._enqueue(thread_id, content, message_id, author_id, "busy")

        outcome = await worker.submit(content, on_progress or self._on_progress)
        if isinstance(outcome, RateLimitCondition):
            return self._handle_rate_limit(thread_id, outcome)
        return outcome

    def _enqueue(
        self,
        thread_id: str,
        content: str,
        message_id: str,
        author_id: str | None,
        reason: Literal["rate_limited", "busy"],
    ) -> QueuedNotice:
        position = self.stores.queue.add(
            thread_id,
            QueuedMessage(message_id=message_id, content=content, author_id=author_id or ""),
        )
        self.stores.audit.record(
            thread_id,
            actions.MESSAGE_QUEUED,
            {"message_id": message_id, "reason": reason, "position": position},
        )
        if reason == "rate_limited":
            text = f"📥 Message queued ({position} waiting). It will be sent when the usage limit resets."
        else:
            text = f"📥 Message queued ({position} waiting). It will be sent when the current task finishes."
        return QueuedNotice(
            thread_id=thread_id, message_id=message_id, position=position, reason=reason, text=text
        )

    def _handle_rate_limit(self, thread_id: str, condition: RateLimitCondition) -> RateLimitPrompt:
        record = self._load_record(thread_id)
        auto_resume = (
            bool(record.auto_resume_after_rate_limit)
            if record is not None and record.rate_limit_timestamp is not None
            else self.config.rate_limit.auto_resume_default
        )
        self.stores.audit.record(
            thread_id,
            actions.RATE_LIMIT_DETECTED,
            {
                "timestamp": condition.timestamp,
                "retry_at": condition.retry_at,
                "auto_resume": auto_resume,
            },
        )
        if auto_resume:
            self.schedule_auto_resume(thread_id, condition.timestamp)
        return self._rate_limit_prompt(thread_id, condition.timestamp, auto_resume)

    def _rate_limit_prompt(self, thread_id: str, timestamp: int, auto_resume: bool) -> RateLimitPrompt:
        retry_at = self.scheduler.deadline(timestamp)
        lines = [f"⏰ Usage limit reached. Work can resume at {format_retry_time(retry_at)}."]
        if auto_resume:
            lines.append("🔄 Auto-resume is on: the thread continues automatically at that time.")
        else:
            lines.append("✋ Auto-resume is off: send a message after that time to continue.")
        return RateLimitPrompt(
            thread_id=thread_id,
            timestamp=timestamp,
            retry_at=retry_at,
            auto_resume=auto_resume,
            text="\n".join(lines),
        )

    async def flush_backlog(
        self, thread_id: str, on_progress: ProgressCallback | None = None
    ) -> RouteOutcome | None:
        """Submit every queued message as one turn once the worker can take it."""
        worker = self._require_worker(thread_id)
        if worker.is_executing:
            return None
        record = self._load_record(thread_id)
        if record is not None and record.rate_limit_timestamp is not None:
            if not self.scheduler.is_due(record.rate_limit_timestamp):
                return None
        drained = self.stores.queue.drain(thread_id)
        if not drained:
            return None
        self.stores.audit.record(
            thread_id, actions.QUEUED_MESSAGES_PROCESSED, {"count": len(drained)}
        )
        text = "\n\n".join(m.content for m in drained)
        try:
            return await self.route_message(thread_id, text, on_progress)
        except ThreadsError:
            self.stores.queue.requeue(thread_id, drained)
            raise

    async def stop_thread(self, thread_id: str) -> bool:
        return await self._require_worker(thread_id).stop()

    # ------------------------------------------------------------------
    # Rate-limit handling
    # ------------------------------------------------------------------

    def schedule_auto_resume(self, thread_id: str, timestamp: int) -> float:
        """Arm the single auto-resume timer for ``thread_id``, replacing any prior one."""
        return self.scheduler.schedule(thread_id, timestamp, self.execute_auto_resume)

    def cancel_auto_resume(self, thread_id: str) -> bool:
        return self.scheduler.cancel(thread_id)

    async def set_auto_resume(self, thread_id: str, enabled: bool) -> ThreadRecord | None:
        """Switch a rate-limited thread between auto and manual resume."""

        def _toggle(record: ThreadRecord) -> None:
            if record.rate_limit_timestamp is not None:
                record.set_rate_limit(record.rate_limit_timestamp, auto_resume=enabled)

        record = self.stores.threads.update(thread_id, _toggle)
        if record is None or record.rate_limit_timestamp is None:
            return None
        if enabled:
            self.schedule_auto_resume(thread_id, record.rate_limit_timestamp)
            action = actions.RATE_LIMIT_AUTO_RESUME_ENABLED
        else:
            self.cancel_auto_resume(thread_id)
            action = actions.RATE_LIMIT_MANUAL_RESUME_SELECTED
        self.stores.audit.record(thread_id, action, {"timestamp": record.rate_limit_timestamp})
        return record

    async def resume_manually(self, thread_id: str) -> bool:
        """Clear the rate-limit state without sending anything."""
        self.cancel_auto_resume(thread_id)
        previous: dict[str, int | None] = {}

        def _clear(record: ThreadRecord) -> None:
            previous["timestamp"] = record.rate_limit_timestamp
            record.clear_rate_limit()

        self.stores.threads.update(thread_id, _clear)
        worker = self.workers.get(thread_id)
        if worker is not None:
            worker.rate_limit = None
        if previous.get("timestamp") is None:
            return False
        self.stores.audit.record(
            thread_id, actions.RATE_LIMIT_MANUAL_RESUME, {"timestamp": previous["timestamp"]}
        )
        return True

    async def execute_auto_resume(self, thread_id: str) -> bool:
        """Send the continuation for a thread whose cooldown has elapsed.

        The rate-limit fields are cleared only once the callback succeeds; on
        failure they stay so the next restore sweep retries.
        """
        callback = self._on_auto_resume
        if callback is None:
            log.warning("Auto-resume for %s skipped: no auto-resume callback set", thread_id)
            return False
        record = self._load_record(thread_id)
        if record is None or record.status != "active":
            log.info("Auto-resume for %s skipped: thread is not active", thread_id)
            return False
        if record.rate_limit_timestamp is None or not record.auto_resume_after_rate_limit:
            log.info("Auto-resume for %s skipped: no pending auto-resume", thread_id)
            return False

        timestamp = record.rate_limit_timestamp
        drained = self.stores.queue.drain(thread_id)
        text = (
            "\n\n".join(m.content for m in drained)
            if drained
            else self.config.assistant.continuation_message
        )

        self._auto_resuming.add(thread_id)
        try:
            await maybe_await(callback(thread_id, text))
        except Exception as exc:
            log.error("Auto-resume callback failed for %s: %s", thread_id, exc)
            self.stores.queue.requeue(thread_id, drained)
            self.stores.audit.record(thread_id, actions.AUTO_RESUME_FAILED, {"error": str(exc)})
            return False
        finally:
            self._auto_resuming.discard(thread_id)

        cleared: list[bool] = []

        def _clear(rec: ThreadRecord) -> None:
            # The continuation itself may have hit a fresh limit.
            if rec.rate_limit_timestamp == timestamp:
                rec.clear_rate_limit()
                cleared.append(True)

        self.stores.threads.update(thread_id, _clear)
        worker = self.workers.get(thread_id)
        if cleared and worker is not None:
            worker.rate_limit = None
        self.stores.audit.record(
            thread_id,
            actions.AUTO_RESUME_EXECUTED,
            {"timestamp": timestamp, "queued_messages": len(drained)},
        )
        if drained:
            self.stores.audit.record(
                thread_id, actions.QUEUED_MESSAGES_PROCESSED, {"count": len(drained)}
            )
        return True

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------

    async def restore_active_threads(self) -> list[str]:
        """Rebuild workers for every active record; returns the restored thread ids."""
        restored: list[str] = []
        for record in self.stores.threads.list_by_status("active"):
            try:
                if await self._restore_thread(record):
                    restored.append(record.thread_id)
            except Exception:
                log.exception("Failed to restore thread %s", record.thread_id)
        log.info("Restored %d active threads", len(restored))
        return restored

    async def _restore_thread(self, record: ThreadRecord) -> bool:
        thread_id = record.thread_id
        async with self._locks.hold(thread_id):
            if thread_id in self.workers:
                return True
            isolated = record.isolated_working_copy_path
            if isolated:
                path = Path(isolated)
                if not path.is_dir():
                    self._archive_on_restore(thread_id, f"isolated working copy missing: {isolated}")
                    return False
                if record.repository_local_path:
                    try:
                        registered = await asyncio.to_thread(
                            self.working_copies.is_registered,
                            Path(record.repository_local_path),
                            path,
                        )
                    except TransportError as exc:
                        log.warning(
                            "Could not verify worktree for %s, restoring anyway: %s", thread_id, exc
                        )
                        registered = True
                    if not registered:
                        self._archive_on_restore(
                            thread_id, f"isolated working copy not registered with git: {isolated}"
                        )
                        return False

            worker = self._worker_from_record(record)
            self.workers[thread_id] = worker
            self.stores.audit.record(
                thread_id,
                actions.THREAD_RESTORED,
                {
                    "worker": worker.name,
                    "repository": record.repository.full_name if record.repository else None,
                    "use_isolated_env": worker.isolated_environment.use_isolated_env,
                },
            )
            log.info("Restored worker %s for thread %s", worker.name, thread_id)
            return True

    def _archive_on_restore(self, thread_id: str, reason: str) -> None:
        log.warning("Archiving thread %s: %s", thread_id, reason)
        self.stores.threads.archive(thread_id, reason)
        self.stores.audit.record(thread_id, actions.THREAD_ARCHIVED_ON_RESTORE, {"reason": reason})

    async def restore_rate_limit_timers(self) -> dict[str, str]:
        """Re-arm or immediately run pending auto-resumes.

        Returns ``thread_id -> "immediate" | "scheduled"`` for the threads handled.
        """
        handled: dict[str, str] = {}
        for record in self.stores.threads.list_by_status("active"):
            timestamp = record.rate_limit_timestamp
            if timestamp is None or not record.auto_resume_after_rate_limit:
                continue
            thread_id = record.thread_id
            if thread_id not in self.workers:
                log.warning("Not re-arming auto-resume for %s: no worker registered", thread_id)
                continue
            try:
                if self.scheduler.is_due(timestamp):
                    self.stores.audit.record(
                        thread_id,
                        actions.RATE_LIMIT_TIMER_RESTORED_IMMEDIATE,
                        {"timestamp": timestamp},
                    )
                    await self.execute_auto_resume(thread_id)
                    handled[thread_id] = "immediate"
                else:
                    delay = self.schedule_auto_resume(thread_id, timestamp)
                    self.stores.audit.record(
                        thread_id,
                        actions.RATE_LIMIT_TIMER_RESTORED,
                        {"timestamp": timestamp, "delay_seconds": round(delay)},
                    )
                    handled[thread_id] = "scheduled"
            except Exception:
                log.exception("Failed to restore auto-resume for %s", thread_id)
        return handled

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def terminate_thread(self, thread_id: str) -> bool:
        """Tear a thread down; returns False when no worker was registered."""
        async with self._locks.hold(thread_id):
            self.cancel_auto_resume(thread_id)
            worker = self.workers.pop(thread_id, None)
            if worker is not None:
                if worker.is_executing:
                    await worker.stop()
                await self._release_working_copy(worker)

            record = self._load_record(thread_id)
            if record is not None and record.status == "active":
                self.stores.threads.archive(thread_id, "terminated")
                self.stores.queue.delete(thread_id)
            if worker is not None or (record is not None and record.status == "active"):
                self.stores.audit.record(
                    thread_id,
                    actions.THREAD_TERMINATED,
                    {"worker": worker.name if worker else None},
                )
            return worker is not None

    async def _release_working_copy(self, worker: Worker) -> None:
        isolated = worker.isolated_working_copy_path
        local = worker.repository_local_path
        if not isolated or isolated == local:
            return
        try:
            await asyncio.to_thread(
                self.working_copies.remove, Path(isolated), Path(local) if local else None
            )
        except OSError as exc:
            log.warning("Could not remove working copy %s: %s", isolated, exc)

    async def shutdown(self) -> None:
        """Cancel in-memory timers; persisted rate-limit state is kept for the next start."""
        self.scheduler.cancel_all()
        for worker in list(self.workers.values()):
            if worker.is_executing:
                await worker.stop()
