"""codethreads error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Kind tag carried by every error so callers can branch on it."""

    CONFIGURATION = "configuration"
    BUSY = "busy"
    TRANSPORT = "transport"
    PERSISTENCE = "persistence"
    NOT_FOUND = "not_found"
    ENVIRONMENT = "environment"
    VALIDATION = "validation"
    INTERNAL = "internal"


class ThreadsError(Exception):
    """Base error for all codethreads exceptions."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, kind={self.kind!r})"


class ConfigurationError(ThreadsError):
    """Missing or invalid configuration (no repository set, bad config file)."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, kind=ErrorKind.CONFIGURATION, retryable=False, **kwargs)


class WorkerBusyError(ThreadsError):
    """Submission while the worker is already executing."""

    def __init__(self, thread_id: str, worker_name: str | None = None) -> None:
        super().__init__(
            f"Worker for thread {thread_id} is already executing",
            kind=ErrorKind.BUSY,
            retryable=False,
            details={"thread_id": thread_id, "worker_name": worker_name},
        )
        self.thread_id = thread_id


class TransportError(ThreadsError):
    """Subprocess exited non-zero or its stream could not be read."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, kind=ErrorKind.TRANSPORT, retryable=True, **kwargs)
        self.exit_code = exit_code
        self.stderr = stderr


class PersistenceError(ThreadsError):
    """I/O failure reading or writing a persisted record."""

    def __init__(self, message: str, *, path: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, kind=ErrorKind.PERSISTENCE, retryable=True, **kwargs)
        self.path = path


class WorkerNotFoundError(ThreadsError):
    """No worker is registered for the thread."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(
            f"No worker registered for thread {thread_id}",
            kind=ErrorKind.NOT_FOUND,
            details={"thread_id": thread_id},
        )
        self.thread_id = thread_id


class EnvironmentStartError(ThreadsError):
    """The isolated environment could not be started."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, kind=ErrorKind.ENVIRONMENT, retryable=True, **kwargs)


class RepositoryFormatError(ThreadsError):
    """Repository name is not in ``org/name`` form."""

    def __init__(self, value: str) -> None:
        super().__init__(
            f"Invalid repository '{value}', expected 'org/name'",
            kind=ErrorKind.VALIDATION,
            details={"value": value},
        )
