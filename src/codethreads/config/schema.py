"""Configuration schema for codethreads YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class RunConfig:
    base_dir: str = ".codethreads"
    debug: bool = False
    json_logs: bool = False


@dataclass(slots=True)
class AssistantConfig:
    binary: str = "claude"
    model: str = ""  # empty string = use the tool's own default model
    append_system_prompt: str = ""
    skip_permission_prompts: bool = True
    extra_args: list[str] = field(default_factory=list)
    continuation_message: str = "continue"
    terminate_grace_seconds: float = 5.0


@dataclass(slots=True)
class RateLimitConfig:
    cooldown_seconds: int = 300
    auto_resume_default: bool = True


@dataclass(slots=True)
class FormattingConfig:
    short_result_lines: int = 20
    head_lines: int = 10
    tail_lines: int = 5
    error_context_lines: int = 1
    max_error_lines: int = 20
    max_progress_length: int = 1900
    max_argument_length: int = 50


@dataclass(slots=True)
class EnvironmentConfig:
    runtime_binary: str = "devcontainer"
    docker_platform: str = "linux/amd64"
    required_feature_prefixes: list[str] = field(
        default_factory=lambda: [
            "ghcr.io/anthropics/devcontainer-features/",
            "anthropics/devcontainer-features/",
        ]
    )


@dataclass(slots=True)
class AuditConfig:
    retention_days: int = 30


@dataclass(slots=True)
class QueueConfig:
    max_message_age_seconds: int = 24 * 60 * 60


@dataclass(slots=True)
class CodethreadsConfig:
    version: int = 1
    run: RunConfig = field(default_factory=RunConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    formatting: FormattingConfig = field(default_factory=FormattingConfig)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    @property
    def base_path(self) -> Path:
        return Path(self.run.base_dir).expanduser()
