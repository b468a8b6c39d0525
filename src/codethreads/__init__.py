"""codethreads - per-thread coding-assistant workers with restart-safe state."""

from codethreads.errors import (
    ConfigurationError,
    ErrorKind,
    ThreadsError,
    TransportError,
    WorkerBusyError,
    WorkerNotFoundError,
)

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ErrorKind",
    "ThreadsError",
    "TransportError",
    "WorkerBusyError",
    "WorkerNotFoundError",
    "__version__",
]
