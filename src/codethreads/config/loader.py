"""YAML config loader for codethreads."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from codethreads.config.schema import (
    AssistantConfig,
    AuditConfig,
    CodethreadsConfig,
    EnvironmentConfig,
    FormattingConfig,
    QueueConfig,
    RateLimitConfig,
    RunConfig,
)
from codethreads.errors import ConfigurationError

DEFAULT_CONFIG_NAME = "codethreads.yaml"


def load_config(path: str | Path | None = None, *, use_env: bool = True) -> CodethreadsConfig:
    """Load configuration from YAML, then apply ``CODETHREADS_*`` overrides.

    A missing file yields defaults. A file that is not a mapping, or values
    of the wrong type, raise :class:`ConfigurationError`.
    """
    p = Path(path) if path is not None else Path(DEFAULT_CONFIG_NAME)
    raw: Any = {}
    if p.exists():
        try:
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Could not parse {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {p} must contain a mapping")

    try:
        config = CodethreadsConfig(
            version=int(raw.get("version", 1)),
            run=RunConfig(**_pick(_section(raw, "run"), RunConfig)),
            assistant=AssistantConfig(**_pick(_section(raw, "assistant"), AssistantConfig)),
            rate_limit=RateLimitConfig(**_pick(_section(raw, "rate_limit"), RateLimitConfig)),
            formatting=FormattingConfig(**_pick(_section(raw, "formatting"), FormattingConfig)),
            environment=EnvironmentConfig(**_pick(_section(raw, "environment"), EnvironmentConfig)),
            audit=AuditConfig(**_pick(_section(raw, "audit"), AuditConfig)),
            queue=QueueConfig(**_pick(_section(raw, "queue"), QueueConfig)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration in {p}: {exc}") from exc

    if use_env:
        load_dotenv()
        _apply_env_overrides(config)
    _validate(config)
    return config


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}


def _apply_env_overrides(config: CodethreadsConfig) -> None:
    if base_dir := os.environ.get("CODETHREADS_BASE_DIR"):
        config.run.base_dir = base_dir
    if binary := os.environ.get("CODETHREADS_CLAUDE_BINARY"):
        config.assistant.binary = binary
    if prompt := os.environ.get("CODETHREADS_APPEND_SYSTEM_PROMPT"):
        config.assistant.append_system_prompt = prompt
    if cooldown := os.environ.get("CODETHREADS_RATE_LIMIT_COOLDOWN"):
        try:
            config.rate_limit.cooldown_seconds = int(cooldown)
        except ValueError as exc:
            raise ConfigurationError(
                f"CODETHREADS_RATE_LIMIT_COOLDOWN must be an integer, got {cooldown!r}"
            ) from exc
    if os.environ.get("CODETHREADS_VERBOSE", "").lower() in ("1", "true", "yes"):
        config.run.debug = True


def _validate(config: CodethreadsConfig) -> None:
    if config.rate_limit.cooldown_seconds < 0:
        raise ConfigurationError("rate_limit.cooldown_seconds must be >= 0")
    if config.audit.retention_days < 1:
        raise ConfigurationError("audit.retention_days must be >= 1")
    fmt = config.formatting
    if fmt.head_lines < 1 or fmt.tail_lines < 0 or fmt.short_result_lines < 1:
        raise ConfigurationError("formatting line counts must be positive")
    if not config.assistant.binary:
        raise ConfigurationError("assistant.binary must not be empty")
