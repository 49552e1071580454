"""Runtime configuration for spec scheduling, retries and convergence."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --model {model} --output-format json --dangerously-skip-permissions"
)
DEFAULT_AUDIT_COMMAND_TEMPLATE = DEFAULT_AGENT_COMMAND_TEMPLATE
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class SchedulerSettings:
    """Worker pool settings."""

    concurrency: int | None = None
    sequential_first: int = 0


@dataclass(slots=True)
class RetrySettings:
    """Transient-failure retry policy."""

    max_attempts: int = 3
    base_delay_ms: int = 5000
    max_backoff_ms: int = 60000


@dataclass(slots=True)
class AgentSettings:
    """CLI agent command settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    audit_command_template: str = DEFAULT_AUDIT_COMMAND_TEMPLATE
    model: str = "opus"
    timeout_seconds: int = 3600
    # Unset: a cancelled batch waits for running agents up to their own timeout.
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class ConvergenceSettings:
    """Audit -> fix loop settings."""

    max_rounds: int = 3
    gap_dir_name: str = "audit"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".specrun/specrun.db")
    workdir: Path = Path(".specrun/runs")
    log_level: str = "WARNING"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    convergence: ConvergenceSettings = field(default_factory=ConvergenceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SPECRUN_DB_PATH", ".specrun/specrun.db")),
            workdir=Path(os.getenv("SPECRUN_WORKDIR", ".specrun/runs")),
            log_level=os.getenv("SPECRUN_LOG_LEVEL", "WARNING").strip().upper(),
            scheduler=SchedulerSettings(
                concurrency=_env_concurrency("SPECRUN_CONCURRENCY"),
                sequential_first=_env_int("SPECRUN_SEQUENTIAL_FIRST", 0),
            ),
            retry=RetrySettings(
                max_attempts=_env_int("SPECRUN_RETRY_MAX_ATTEMPTS", 3),
                base_delay_ms=_env_int("SPECRUN_RETRY_BASE_DELAY_MS", 5000),
                max_backoff_ms=_env_int("SPECRUN_RETRY_MAX_BACKOFF_MS", 60000),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "SPECRUN_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                audit_command_template=os.getenv(
                    "SPECRUN_AUDIT_COMMAND_TEMPLATE",
                    DEFAULT_AUDIT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("SPECRUN_AGENT_MODEL", "opus"),
                timeout_seconds=_env_int("SPECRUN_AGENT_TIMEOUT_SECONDS", 3600),
                graceful_shutdown_seconds=_env_optional_int(
                    "SPECRUN_AGENT_GRACEFUL_SHUTDOWN_SECONDS",
                ),
            ),
            convergence=ConvergenceSettings(
                max_rounds=_env_int("SPECRUN_MAX_ROUNDS", 3),
                gap_dir_name=os.getenv("SPECRUN_GAP_DIR_NAME", "audit"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"SPECRUN_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}: {self.log_level!r}",
            )
        if self.scheduler.concurrency is not None and self.scheduler.concurrency < 1:
            raise ValueError("SPECRUN_CONCURRENCY must be >= 1 or 'auto'.")
        if self.scheduler.sequential_first < 0:
            raise ValueError("SPECRUN_SEQUENTIAL_FIRST must be >= 0.")
        if self.retry.max_attempts < 1:
            raise ValueError("SPECRUN_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_delay_ms < 0:
            raise ValueError("SPECRUN_RETRY_BASE_DELAY_MS must be >= 0.")
        if self.retry.max_backoff_ms < self.retry.base_delay_ms:
            raise ValueError(
                "SPECRUN_RETRY_MAX_BACKOFF_MS must be >= SPECRUN_RETRY_BASE_DELAY_MS.",
            )
        if self.agent.timeout_seconds <= 0:
            raise ValueError("SPECRUN_AGENT_TIMEOUT_SECONDS must be > 0.")
        graceful = self.agent.graceful_shutdown_seconds
        if graceful is not None and graceful < 0:
            raise ValueError("SPECRUN_AGENT_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not self.agent.command_template.strip():
            raise ValueError("SPECRUN_AGENT_COMMAND_TEMPLATE must not be empty.")
        if self.convergence.max_rounds < 1:
            raise ValueError("SPECRUN_MAX_ROUNDS must be >= 1.")
        gap_dir_name = self.convergence.gap_dir_name.strip()
        if not gap_dir_name or Path(gap_dir_name).name != gap_dir_name:
            raise ValueError("SPECRUN_GAP_DIR_NAME must be a plain directory name.")

    def validate_for_audit(self) -> None:
        self.validate()
        if not self.agent.audit_command_template.strip():
            raise ValueError("SPECRUN_AUDIT_COMMAND_TEMPLATE must not be empty.")

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_concurrency(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or value.strip().lower() in {"", "auto"}:
        return None
    return _env_int(name, 0)


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return _env_int(name, 0)
