"""Shared types for subprocess-backed executors and auditors."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path


class BackendRunError(RuntimeError):
    """Agent command could not be started."""


class CommandTemplateError(ValueError):
    """Agent command template is empty or uses unknown placeholders."""


@dataclass(slots=True)
class CommandRunRequest:
    """Inputs required to run one agent command."""

    run_args: str | list[str]
    command_head: str
    stdout_path: Path
    stderr_path: Path
    timeout_seconds: int
    cwd: Path | None = None
    env: dict[str, str] | None = None
    shutdown_requested: Callable[[], bool] | None = None
    # None lets a running command finish even after shutdown was requested.
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class CommandRunResult:
    """Execution outcome of one agent command."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path
    duration_seconds: float = 0.0
    interrupted: bool = False

    def read_stdout(self) -> str:
        return _read_text(self.stdout_path)

    def read_stderr(self) -> str:
        return _read_text(self.stderr_path)


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
