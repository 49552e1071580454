"""Subprocess executor and auditor implementations."""

from specrun.scheduler.backend.auditor import CliAuditor
from specrun.scheduler.backend.base import (
    BackendRunError,
    CommandRunRequest,
    CommandRunResult,
    CommandTemplateError,
)
from specrun.scheduler.backend.cli_backend import CliSpecExecutor

__all__ = [
    "BackendRunError",
    "CliAuditor",
    "CliSpecExecutor",
    "CommandRunRequest",
    "CommandRunResult",
    "CommandTemplateError",
]
