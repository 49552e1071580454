"""Controllers for scheduler CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from specrun.config import Settings
from specrun.scheduler.backend import CliAuditor, CliSpecExecutor
from specrun.scheduler.convergence import ConvergenceLoop, default_gap_dir
from specrun.scheduler.deps import has_dependencies, load_spec_nodes
from specrun.scheduler.graph import DependencyGraph
from specrun.scheduler.models import (
    BatchKind,
    BatchResult,
    ConvergenceReport,
    ConvergenceRound,
    ConvergenceState,
    StatusChange,
    WorkStatus,
)
from specrun.scheduler.pool import BatchOptions, WorkerPool, resolve_concurrency
from specrun.scheduler.repository import BatchRepository
from specrun.scheduler.retry import RetryPolicy

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130
# Fix batches run gap specs that the next audit round deletes.
RERUNNABLE_KINDS = (BatchKind.BATCH, BatchKind.RERUN)


@dataclass(slots=True)
class PlanCommand:
    """CLI input for execution plan preview."""

    spec_dir: Path


@dataclass(slots=True)
class AgentOverrides:
    """Optional CLI overrides of agent and scheduling settings."""

    concurrency: str | None = None
    sequential_first: int | None = None
    max_attempts: int | None = None
    command_template: str | None = None
    model: str | None = None
    timeout_seconds: int | None = None


@dataclass(slots=True)
class RunCommand:
    """CLI input for one batch run."""

    db_path: Path | None
    spec_dir: Path
    codebase: Path
    overrides: AgentOverrides


@dataclass(slots=True)
class RerunFailedCommand:
    """CLI input for rerunning the failures of a stored batch."""

    db_path: Path | None
    run_id: str | None
    codebase: Path
    overrides: AgentOverrides


@dataclass(slots=True)
class ConvergeCommand:
    """CLI input for the audit -> fix loop."""

    db_path: Path | None
    spec_dir: Path
    codebase: Path
    max_rounds: int | None
    gap_dir: Path | None
    audit_command_template: str | None
    overrides: AgentOverrides


@dataclass(slots=True)
class HistoryCommand:
    """CLI input for batch history listing."""

    db_path: Path | None
    run_id: str | None
    limit: int


@dataclass(slots=True)
class CommandOutcome:
    """Printable lines plus the process exit code."""

    lines: list[str]
    exit_code: int = EXIT_OK


class SchedulerCliController:
    """Wires settings, executors and storage for each CLI command."""

    def __init__(self, *, progress: Callable[[str], None] | None = None) -> None:
        self.progress = progress

    def plan(self, command: PlanCommand) -> list[str]:
        """Show execution levels without running anything."""

        nodes = load_spec_nodes(command.spec_dir)
        graph = DependencyGraph.build(nodes)
        levels = graph.topo_sort()
        lines = [f"Specs: {len(nodes)} in {command.spec_dir}"]
        if not has_dependencies(nodes):
            lines.append("No dependencies declared; all specs run in one level.")
        for index, level in enumerate(levels):
            lines.append(f"Level {index}: {', '.join(level)}")
            for name in level:
                dependencies = graph.dependencies_of(name)
                if dependencies:
                    lines.append(f"  {name} <- {', '.join(dependencies)}")
        return lines

    def run(self, command: RunCommand) -> CommandOutcome:
        settings = _settings(command.db_path, command.overrides)
        nodes = load_spec_nodes(command.spec_dir)
        graph = DependencyGraph.build(nodes)
        pool = self._pool(settings, codebase=command.codebase)
        result = pool.run_batch(graph, _batch_options(settings))
        with _repository(settings) as repository:
            repository.save_batch(result, spec_dir=command.spec_dir)
        return _batch_outcome(result)

    def rerun_failed(self, command: RerunFailedCommand) -> CommandOutcome:
        settings = _settings(command.db_path, command.overrides)
        with _repository(settings) as repository:
            prior = (
                repository.get_batch(command.run_id)
                if command.run_id is not None
                else repository.latest_batch(kinds=RERUNNABLE_KINDS)
            )
            if prior is None:
                target = command.run_id or "any batch"
                raise ValueError(f"No stored batch found for {target}.")
            spec_dir = repository.batch_spec_dir(prior.run_id)
            pending = [
                outcome.name for outcome in prior.outcomes if outcome.status != WorkStatus.SUCCEEDED
            ]
            if not pending:
                return CommandOutcome(
                    lines=[f"Batch {prior.run_id}: nothing to rerun, all specs succeeded."],
                )
            pool = self._pool(settings, codebase=command.codebase)
            result = pool.rerun_failed(prior, _batch_options(settings))
            repository.save_batch(result, spec_dir=Path(spec_dir) if spec_dir else None)
        outcome = _batch_outcome(result)
        outcome.lines.insert(0, f"Rerun of batch {prior.run_id}: {', '.join(pending)}")
        return outcome

    def converge(self, command: ConvergeCommand) -> CommandOutcome:
        settings = _settings(command.db_path, command.overrides)
        if command.max_rounds is not None:
            settings.convergence.max_rounds = command.max_rounds
        if command.audit_command_template is not None:
            settings.agent.audit_command_template = command.audit_command_template
        settings.validate_for_audit()

        nodes = load_spec_nodes(command.spec_dir)
        gap_dir = command.gap_dir or default_gap_dir(
            command.spec_dir,
            settings.convergence.gap_dir_name,
        )
        pool = self._pool(settings, codebase=command.codebase)
        auditor = CliAuditor(
            command_template=settings.agent.audit_command_template,
            model=settings.agent.model,
            timeout_seconds=settings.agent.timeout_seconds,
            workdir=settings.workdir,
        )
        loop = ConvergenceLoop(
            pool,
            auditor,
            max_rounds=settings.convergence.max_rounds,
            batch_options=_batch_options(settings),
            on_round=self._report_round,
        )
        report = loop.run(nodes, codebase=command.codebase, gap_dir=gap_dir)
        with _repository(settings) as repository:
            for batch in report.fix_batches:
                repository.save_batch(batch, spec_dir=gap_dir)
            convergence_id = repository.save_rounds(report)
        return _convergence_outcome(report, convergence_id=convergence_id)

    def history(self, command: HistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.run_id is not None:
                batch = repository.get_batch(command.run_id)
                if batch is None:
                    raise ValueError(f"Batch not found: {command.run_id}")
                return _batch_detail_lines(batch)
            batches = repository.list_batches(limit=command.limit)
            rounds = repository.list_rounds()
        if not batches:
            return ["No batches recorded."]
        lines = [
            f"{batch.run_id} {batch.kind.value:<5} {batch.started_at:%Y-%m-%d %H:%M:%S} "
            f"succeeded={len(batch.succeeded)} failed={len(batch.failed)} "
            f"blocked={len(batch.blocked)} not_started={len(batch.not_started)} "
            f"cost=${batch.total_cost_usd:.4f}" + (" cancelled" if batch.cancelled else "")
            for batch in batches
        ]
        if rounds:
            lines.append("Latest convergence rounds:")
            lines.extend(_round_line(entry) for entry in rounds)
        return lines

    def _pool(self, settings: Settings, *, codebase: Path) -> WorkerPool:
        executor = CliSpecExecutor(
            command_template=settings.agent.command_template,
            model=settings.agent.model,
            timeout_seconds=settings.agent.timeout_seconds,
            workdir=settings.workdir,
            cwd=codebase,
            graceful_shutdown_seconds=settings.agent.graceful_shutdown_seconds,
        )
        pool = WorkerPool(
            executor,
            policy=RetryPolicy(
                max_attempts=settings.retry.max_attempts,
                base_delay_ms=settings.retry.base_delay_ms,
                max_backoff_ms=settings.retry.max_backoff_ms,
            ),
            sinks=[self._report_change],
        )
        executor.shutdown_requested = lambda: pool.cancel_requested
        return pool

    def _report_change(self, change: StatusChange) -> None:
        if self.progress is None or change.to_status == WorkStatus.RUNNING:
            return
        self.progress(f"[{change.to_status.value}] {change.spec_name}")

    def _report_round(self, entry: ConvergenceRound) -> None:
        if self.progress is not None:
            self.progress(_round_line(entry))


def _settings(db_path: Path | None, overrides: AgentOverrides) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if overrides.concurrency is not None:
        settings.scheduler.concurrency = resolve_concurrency(overrides.concurrency)
    if overrides.sequential_first is not None:
        settings.scheduler.sequential_first = overrides.sequential_first
    if overrides.max_attempts is not None:
        settings.retry.max_attempts = overrides.max_attempts
    if overrides.command_template is not None:
        settings.agent.command_template = overrides.command_template
    if overrides.model is not None:
        settings.agent.model = overrides.model
    if overrides.timeout_seconds is not None:
        settings.agent.timeout_seconds = overrides.timeout_seconds
    settings.validate()
    return settings


def _batch_options(settings: Settings) -> BatchOptions:
    return BatchOptions(
        concurrency=settings.scheduler.concurrency,
        sequential_first=settings.scheduler.sequential_first,
    )


def _batch_outcome(result: BatchResult) -> CommandOutcome:
    lines = _batch_detail_lines(result)
    if result.cancelled:
        return CommandOutcome(lines=lines, exit_code=EXIT_INTERRUPTED)
    return CommandOutcome(lines=lines, exit_code=EXIT_OK if result.all_succeeded else EXIT_FAILED)


def _batch_detail_lines(result: BatchResult) -> list[str]:
    lines = [
        f"Batch {result.run_id} ({result.kind.value}): {len(result.outcomes)} specs, "
        f"{len(result.levels)} levels, concurrency={result.concurrency}",
    ]
    for outcome in result.outcomes:
        line = f"  {outcome.status.value:<9} {outcome.name}"
        if outcome.attempts:
            line += f" attempts={outcome.attempts} cost=${outcome.cost_usd:.4f}"
        if outcome.error:
            line += f" error={outcome.error}"
        lines.append(line)
    lines.append(
        f"Summary: succeeded={len(result.succeeded)} failed={len(result.failed)} "
        f"blocked={len(result.blocked)} not_started={len(result.not_started)} "
        f"cost=${result.total_cost_usd:.4f} wall_clock={result.wall_clock_seconds:.1f}s",
    )
    if result.cancelled:
        lines.append("Batch was cancelled before completion.")
    if result.failed or result.blocked or result.not_started:
        lines.append(f"Rerun with: specrun rerun-failed --run-id {result.run_id}")
    return lines


def _convergence_outcome(report: ConvergenceReport, *, convergence_id: str) -> CommandOutcome:
    lines = [
        f"Convergence {convergence_id}: {report.state.value} "
        f"after {len(report.rounds)} round(s)",
    ]
    lines.extend(_round_line(entry) for entry in report.rounds)
    lines.append(f"Total cost: ${report.total_cost_usd:.4f}")
    if report.state == ConvergenceState.EXHAUSTED:
        lines.append(f"Remaining gap specs ({len(report.remaining_gaps)}) kept in {report.gap_dir}")
        lines.extend(f"  {gap.name}" for gap in report.remaining_gaps)
        interrupted = any(batch.cancelled for batch in report.fix_batches)
        return CommandOutcome(
            lines=lines,
            exit_code=EXIT_INTERRUPTED if interrupted else EXIT_FAILED,
        )
    return CommandOutcome(lines=lines)


def _round_line(entry: ConvergenceRound) -> str:
    return (
        f"Round {entry.round_number}: gaps={entry.gap_count} "
        f"fixes_applied={'yes' if entry.fixes_applied else 'no'} "
        f"cost=${entry.cost_usd:.4f} duration={entry.duration_seconds:.1f}s"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[BatchRepository]:
    repository = BatchRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
