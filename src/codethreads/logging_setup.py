"""Structured logging using structlog."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def setup_logging(*, debug: bool = False, json_output: bool = False) -> None:
    """Configure structlog and stdlib logging for the process.

    Args:
        debug: Enable DEBUG level logging.
        json_output: Use JSON output format instead of console.
    """
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        level=level,
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "codethreads", **kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name, **kwargs)


def bind_thread(thread_id: str) -> None:
    """Attach ``thread_id`` to every structlog event of the current task."""
    structlog.contextvars.bind_contextvars(thread_id=thread_id)


def unbind_thread() -> None:
    structlog.contextvars.unbind_contextvars("thread_id")
