"""CLI entrypoint for specrun."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from specrun import __version__
from specrun.config import LOG_LEVELS, Settings
from specrun.scheduler.backend.auditor import AuditError
from specrun.scheduler.controllers import (
    AgentOverrides,
    CommandOutcome,
    ConvergeCommand,
    HistoryCommand,
    PlanCommand,
    RerunFailedCommand,
    RunCommand,
    SchedulerCliController,
)

click.rich_click.USE_MARKDOWN = True
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _progress(line: str) -> None:
    click.echo(line, err=True)


SCHEDULER_CONTROLLER = SchedulerCliController(progress=_progress)


def _agent_options(command):
    """Options shared by every command that runs specs through an agent."""

    options = [
        click.option(
            "--db-path",
            type=click.Path(path_type=Path),
            default=None,
            help="SQLite DB path.",
        ),
        click.option(
            "--codebase",
            type=click.Path(path_type=Path, file_okay=False),
            default=Path("."),
            show_default=True,
            help="Directory the agent works in.",
        ),
        click.option(
            "--concurrency",
            default=None,
            help="Parallel agents per level: a number or `auto` (CPU and memory based).",
        ),
        click.option(
            "--sequential-first",
            type=click.IntRange(min=0),
            default=None,
            help="Run this many specs one at a time before going parallel.",
        ),
        click.option(
            "--max-attempts",
            type=click.IntRange(min=1),
            default=None,
            help="Attempts per spec for transient failures.",
        ),
        click.option(
            "--agent-command",
            default=None,
            help="Agent command template with `{prompt}`, `{prompt_file}` or `{spec_path}`.",
        ),
        click.option("--model", default=None, help="Model name passed as `{model}`."),
        click.option(
            "--timeout-seconds",
            type=click.IntRange(min=1),
            default=None,
            help="Per-attempt agent timeout.",
        ),
    ]
    for option in reversed(options):
        command = option(command)
    return command


@click.group()
@click.version_option(version=__version__, prog_name="specrun")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level; defaults to SPECRUN_LOG_LEVEL or WARNING.",
)
def specrun(log_level: str | None) -> None:
    """Run markdown specs through CLI coding agents in dependency order."""

    with _cli_errors():
        level = log_level.upper() if log_level else Settings.from_env().log_level
    logging.basicConfig(level=logging.getLevelName(level), format=LOG_FORMAT)


@specrun.command("plan")
@click.argument("spec_dir", type=click.Path(path_type=Path, file_okay=False))
def plan(spec_dir: Path) -> None:
    """Show execution levels of a spec directory without running anything."""

    with _cli_errors():
        _emit_lines(SCHEDULER_CONTROLLER.plan(PlanCommand(spec_dir=spec_dir)))


@specrun.command("run")
@click.argument("spec_dir", type=click.Path(path_type=Path, file_okay=False))
@_agent_options
def run(  # noqa: PLR0913
    spec_dir: Path,
    db_path: Path | None,
    codebase: Path,
    concurrency: str | None,
    sequential_first: int | None,
    max_attempts: int | None,
    agent_command: str | None,
    model: str | None,
    timeout_seconds: int | None,
) -> None:
    """Run every spec in SPEC_DIR level by level and record the batch."""

    with _cli_errors():
        outcome = SCHEDULER_CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                spec_dir=spec_dir,
                codebase=codebase,
                overrides=AgentOverrides(
                    concurrency=concurrency,
                    sequential_first=sequential_first,
                    max_attempts=max_attempts,
                    command_template=agent_command,
                    model=model,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        )
    _finish(outcome)


@specrun.command("rerun-failed")
@click.option("--run-id", default=None, help="Batch to rerun; defaults to the latest one.")
@_agent_options
def rerun_failed(  # noqa: PLR0913
    run_id: str | None,
    db_path: Path | None,
    codebase: Path,
    concurrency: str | None,
    sequential_first: int | None,
    max_attempts: int | None,
    agent_command: str | None,
    model: str | None,
    timeout_seconds: int | None,
) -> None:
    """Rerun failed, blocked and never-started specs of a recorded batch.

    Specs that already succeeded count as satisfied dependencies.
    """

    with _cli_errors():
        outcome = SCHEDULER_CONTROLLER.rerun_failed(
            RerunFailedCommand(
                db_path=db_path,
                run_id=run_id,
                codebase=codebase,
                overrides=AgentOverrides(
                    concurrency=concurrency,
                    sequential_first=sequential_first,
                    max_attempts=max_attempts,
                    command_template=agent_command,
                    model=model,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        )
    _finish(outcome)


@specrun.command("converge")
@click.argument("spec_dir", type=click.Path(path_type=Path, file_okay=False))
@click.option(
    "--max-rounds",
    type=click.IntRange(min=1),
    default=None,
    help="Audit rounds before giving up; defaults to SPECRUN_MAX_ROUNDS or 3.",
)
@click.option(
    "--gap-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Where gap specs are written; defaults to `<spec_dir>/audit`.",
)
@click.option(
    "--audit-command",
    default=None,
    help="Audit command template with `{prompt}`, `{prompt_file}` or `{output_dir}`.",
)
@_agent_options
def converge(  # noqa: PLR0913
    spec_dir: Path,
    max_rounds: int | None,
    gap_dir: Path | None,
    audit_command: str | None,
    db_path: Path | None,
    codebase: Path,
    concurrency: str | None,
    sequential_first: int | None,
    max_attempts: int | None,
    agent_command: str | None,
    model: str | None,
    timeout_seconds: int | None,
) -> None:
    """Audit the codebase against SPEC_DIR and run fix batches until no gaps remain."""

    with _cli_errors():
        outcome = SCHEDULER_CONTROLLER.converge(
            ConvergeCommand(
                db_path=db_path,
                spec_dir=spec_dir,
                codebase=codebase,
                max_rounds=max_rounds,
                gap_dir=gap_dir,
                audit_command_template=audit_command,
                overrides=AgentOverrides(
                    concurrency=concurrency,
                    sequential_first=sequential_first,
                    max_attempts=max_attempts,
                    command_template=agent_command,
                    model=model,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        )
    _finish(outcome)


@specrun.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--run-id", default=None, help="Show per-spec outcomes of one batch.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many latest batches to list.",
)
def history(db_path: Path | None, run_id: str | None, limit: int) -> None:
    """List recorded batches and the latest convergence rounds."""

    with _cli_errors():
        lines = SCHEDULER_CONTROLLER.history(
            HistoryCommand(db_path=db_path, run_id=run_id, limit=limit),
        )
    _emit_lines(lines)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (AuditError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _finish(outcome: CommandOutcome) -> None:
    _emit_lines(outcome.lines)
    if outcome.exit_code:
        sys.exit(outcome.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    specrun()
