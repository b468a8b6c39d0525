"""Global test fixtures for codethreads."""

from __future__ import annotations

import pytest

_OVERRIDE_VARS = (
    "CODETHREADS_BASE_DIR",
    "CODETHREADS_CLAUDE_BINARY",
    "CODETHREADS_APPEND_SYSTEM_PROMPT",
    "CODETHREADS_RATE_LIMIT_COOLDOWN",
    "CODETHREADS_VERBOSE",
)


@pytest.fixture(autouse=True)
def _clear_config_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's shell environment out of config loading."""
    for name in _OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)
