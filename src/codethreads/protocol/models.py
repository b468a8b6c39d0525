"""Filesystem protocol types for codethreads.

Records are stored as JSON with camelCase keys so files stay readable by
other tooling that shares the state directory.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from codethreads.errors import RepositoryFormatError

ThreadStatus = Literal["active", "archived"]

_REPOSITORY_RE = re.compile(r"^([a-zA-Z0-9_-]+)/([a-zA-Z0-9_.-]+)$")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class RepositoryRef:
    org: str
    name: str

    @classmethod
    def parse(cls, value: str) -> RepositoryRef:
        match = _REPOSITORY_RE.match(value.strip())
        if not match:
            raise RepositoryFormatError(value)
        return cls(org=match.group(1), name=match.group(2))

    @property
    def full_name(self) -> str:
        return f"{self.org}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


@dataclass(slots=True)
class IsolatedEnvironmentConfig:
    use_isolated_env: bool = False
    skip_permission_prompts: bool = False
    has_config_file: bool = False
    has_required_feature: bool = False
    environment_handle: str | None = None
    started: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "useIsolatedEnv": self.use_isolated_env,
            "skipPermissionPrompts": self.skip_permission_prompts,
            "hasConfigFile": self.has_config_file,
            "hasRequiredFeature": self.has_required_feature,
            "environmentHandle": self.environment_handle,
            "started": self.started,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> IsolatedEnvironmentConfig:
        return cls(
            use_isolated_env=bool(raw.get("useIsolatedEnv", False)),
            skip_permission_prompts=bool(raw.get("skipPermissionPrompts", False)),
            has_config_file=bool(raw.get("hasConfigFile", False)),
            has_required_feature=bool(raw.get("hasRequiredFeature", False)),
            environment_handle=raw.get("environmentHandle"),
            started=bool(raw.get("started", False)),
        )


@dataclass(slots=True)
class ThreadRecord:
    thread_id: str
    repository: RepositoryRef | None = None
    repository_local_path: str | None = None
    isolated_working_copy_path: str | None = None
    status: ThreadStatus = "active"
    created_at: str = field(default_factory=utc_now_iso)
    last_active_at: str = field(default_factory=utc_now_iso)
    isolated_environment: IsolatedEnvironmentConfig | None = None
    rate_limit_timestamp: int | None = None
    auto_resume_after_rate_limit: bool | None = None
    session_id: str | None = None
    worker_name: str | None = None
    archive_reason: str | None = None

    @property
    def is_rate_limited(self) -> bool:
        return self.rate_limit_timestamp is not None

    def set_rate_limit(self, timestamp: int, *, auto_resume: bool) -> None:
        self.rate_limit_timestamp = int(timestamp)
        self.auto_resume_after_rate_limit = auto_resume

    def clear_rate_limit(self) -> None:
        self.rate_limit_timestamp = None
        self.auto_resume_after_rate_limit = None

    def touch(self) -> None:
        self.last_active_at = utc_now_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "repository": self.repository.full_name if self.repository else None,
            "repositoryLocalPath": self.repository_local_path,
            "isolatedWorkingCopyPath": self.isolated_working_copy_path,
            "status": self.status,
            "createdAt": self.created_at,
            "lastActiveAt": self.last_active_at,
            "isolatedEnvironmentConfig": (
                self.isolated_environment.to_dict() if self.isolated_environment else None
            ),
            "rateLimitTimestamp": self.rate_limit_timestamp,
            "autoResumeAfterRateLimit": self.auto_resume_after_rate_limit,
            "sessionId": self.session_id,
            "workerName": self.worker_name,
            "archiveReason": self.archive_reason,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ThreadRecord:
        repository = raw.get("repository")
        env = raw.get("isolatedEnvironmentConfig")
        status = raw.get("status", "active")
        if status not in ("active", "archived"):
            raise ValueError(f"unknown thread status {status!r}")
        timestamp = raw.get("rateLimitTimestamp")
        auto_resume = raw.get("autoResumeAfterRateLimit")
        return cls(
            thread_id=str(raw["threadId"]),
            repository=RepositoryRef.parse(repository) if repository else None,
            repository_local_path=raw.get("repositoryLocalPath"),
            isolated_working_copy_path=raw.get("isolatedWorkingCopyPath"),
            status=status,
            created_at=raw.get("createdAt") or utc_now_iso(),
            last_active_at=raw.get("lastActiveAt") or utc_now_iso(),
            isolated_environment=(
                IsolatedEnvironmentConfig.from_dict(env) if isinstance(env, dict) else None
            ),
            rate_limit_timestamp=int(timestamp) if timestamp is not None else None,
            auto_resume_after_rate_limit=bool(auto_resume) if auto_resume is not None else None,
            session_id=raw.get("sessionId"),
            worker_name=raw.get("workerName"),
            archive_reason=raw.get("archiveReason"),
        )


@dataclass(slots=True, frozen=True)
class AuditEntry:
    timestamp: str
    thread_id: str
    action: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "threadId": self.thread_id,
            "action": self.action,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AuditEntry:
        details = raw.get("details")
        return cls(
            timestamp=str(raw.get("timestamp", "")),
            thread_id=str(raw.get("threadId", "")),
            action=str(raw.get("action", "")),
            details=details if isinstance(details, dict) else {},
        )


@dataclass(slots=True)
class QueuedMessage:
    message_id: str
    content: str
    author_id: str
    timestamp: int = field(default_factory=epoch_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "authorId": self.author_id,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueuedMessage:
        return cls(
            message_id=str(raw["messageId"]),
            content=str(raw.get("content", "")),
            author_id=str(raw.get("authorId", "")),
            timestamp=int(raw.get("timestamp", 0)),
        )


@dataclass(slots=True)
class ThreadQueue:
    thread_id: str
    messages: list[QueuedMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ThreadQueue:
        messages = raw.get("messages", [])
        return cls(
            thread_id=str(raw["threadId"]),
            messages=[QueuedMessage.from_dict(m) for m in messages if isinstance(m, dict)],
        )


def default_state_layout(base_dir: Path) -> dict[str, Path]:
    return {
        "root": base_dir,
        "threads": base_dir / "threads",
        "audit": base_dir / "audit",
        "queued_messages": base_dir / "queued_messages",
        "sessions": base_dir / "sessions",
        "credentials": base_dir / "credentials",
        "repositories": base_dir / "repositories",
        "worktrees": base_dir / "worktrees",
    }
