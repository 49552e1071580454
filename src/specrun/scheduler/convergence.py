"""Audit -> remediate convergence loop."""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from specrun.scheduler.graph import (
    CircularDependencyError,
    DependencyGraph,
    UnresolvedDependencyError,
)
from specrun.scheduler.models import (
    AuditResult,
    BatchKind,
    BatchResult,
    ConvergenceReport,
    ConvergenceRound,
    ConvergenceState,
    SpecNode,
)
from specrun.scheduler.pool import BatchOptions, WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 3


class Auditor(Protocol):
    """Compares the codebase against the original specs and writes gap specs."""

    def audit(
        self,
        original_specs: list[SpecNode],
        codebase: Path,
        output_dir: Path,
    ) -> AuditResult:
        """Return the gap specs found; an empty list means converged."""


class ConvergenceLoop:
    """Repeats audit and fix rounds until no gaps remain or rounds run out.

    The gap directory is emptied before every audit. When the loop ends
    exhausted it is left in place so the remaining gap specs can be inspected.
    """

    def __init__(  # noqa: PLR0913
        self,
        pool: WorkerPool,
        auditor: Auditor,
        *,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        batch_options: BatchOptions | None = None,
        on_round: Callable[[ConvergenceRound], None] | None = None,
        on_state: Callable[[ConvergenceState], None] | None = None,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be >= 1.")
        self.pool = pool
        self.auditor = auditor
        self.max_rounds = max_rounds
        self.batch_options = batch_options or BatchOptions()
        self._on_round = on_round
        self._on_state = on_state

    def run(
        self,
        original_specs: list[SpecNode],
        *,
        codebase: Path,
        gap_dir: Path,
    ) -> ConvergenceReport:
        _ensure_safe_gap_dir(gap_dir, codebase=codebase, original_specs=original_specs)
        rounds: list[ConvergenceRound] = []
        fix_batches: list[BatchResult] = []
        satisfied = [spec.name for spec in original_specs]

        for round_number in range(1, self.max_rounds + 1):
            started = time.monotonic()
            self._enter(ConvergenceState.AUDITING, round_number)
            _clear_gap_dir(gap_dir)
            audit = self.auditor.audit(original_specs, codebase, gap_dir)
            gaps = list(audit.gap_specs)
            logger.info("Round %d audit found %d gap spec(s)", round_number, len(gaps))

            if not gaps:
                self._record(rounds, round_number, 0, False, started, audit.cost_usd)
                self._enter(ConvergenceState.CONVERGED, round_number)
                return ConvergenceReport(
                    state=ConvergenceState.CONVERGED,
                    rounds=tuple(rounds),
                    fix_batches=tuple(fix_batches),
                )

            if round_number == self.max_rounds:
                self._record(rounds, round_number, len(gaps), False, started, audit.cost_usd)
                self._enter(ConvergenceState.EXHAUSTED, round_number)
                logger.warning(
                    "Convergence exhausted after %d rounds; %d gap spec(s) kept in %s",
                    round_number,
                    len(gaps),
                    gap_dir,
                )
                return ConvergenceReport(
                    state=ConvergenceState.EXHAUSTED,
                    rounds=tuple(rounds),
                    remaining_gaps=tuple(gaps),
                    gap_dir=str(gap_dir),
                    fix_batches=tuple(fix_batches),
                )

            self._enter(ConvergenceState.REMEDIATING, round_number)
            batch = self._remediate(gaps, satisfied=satisfied, round_number=round_number)
            fix_cost = 0.0
            fixes_applied = False
            if batch is not None:
                fix_batches.append(batch)
                fix_cost = batch.total_cost_usd
                fixes_applied = bool(batch.succeeded)
            self._record(
                rounds,
                round_number,
                len(gaps),
                fixes_applied,
                started,
                audit.cost_usd + fix_cost,
            )
            if batch is not None and batch.cancelled:
                logger.warning("Convergence stopped after cancellation in round %d", round_number)
                return ConvergenceReport(
                    state=ConvergenceState.EXHAUSTED,
                    rounds=tuple(rounds),
                    remaining_gaps=tuple(gaps),
                    gap_dir=str(gap_dir),
                    fix_batches=tuple(fix_batches),
                )

        raise AssertionError("unreachable: the last round always terminates the loop")

    def _remediate(
        self,
        gaps: list[SpecNode],
        *,
        satisfied: list[str],
        round_number: int,
    ) -> BatchResult | None:
        try:
            graph = DependencyGraph.build(gaps, satisfied=satisfied)
            return self.pool.run_batch(
                graph,
                BatchOptions(
                    concurrency=self.batch_options.concurrency,
                    sequential_first=self.batch_options.sequential_first,
                    kind=BatchKind.FIX,
                ),
            )
        except (UnresolvedDependencyError, CircularDependencyError, ValueError) as error:
            logger.warning("Round %d gap specs could not be scheduled: %s", round_number, error)
            return None

    def _record(  # noqa: PLR0913
        self,
        rounds: list[ConvergenceRound],
        round_number: int,
        gap_count: int,
        fixes_applied: bool,
        started: float,
        cost_usd: float,
    ) -> None:
        entry = ConvergenceRound(
            round_number=round_number,
            gap_count=gap_count,
            fixes_applied=fixes_applied,
            duration_seconds=time.monotonic() - started,
            cost_usd=cost_usd,
        )
        rounds.append(entry)
        if self._on_round is not None:
            self._on_round(entry)

    def _enter(self, state: ConvergenceState, round_number: int) -> None:
        logger.info("Convergence round %d: %s", round_number, state.value)
        if self._on_state is not None:
            self._on_state(state)


def default_gap_dir(spec_dir: Path, name: str = "audit") -> Path:
    return spec_dir / name


def _clear_gap_dir(gap_dir: Path) -> None:
    if gap_dir.exists():
        shutil.rmtree(gap_dir)
    gap_dir.mkdir(parents=True, exist_ok=True)


def _ensure_safe_gap_dir(
    gap_dir: Path,
    *,
    codebase: Path,
    original_specs: list[SpecNode],
) -> None:
    resolved = gap_dir.resolve()
    if resolved == codebase.resolve():
        raise ValueError(f"Gap directory must differ from the codebase: {gap_dir}")
    for spec in original_specs:
        spec_path = Path(spec.path).resolve()
        if resolved == spec_path.parent or resolved in spec_path.parents:
            raise ValueError(f"Gap directory must not contain the original specs: {gap_dir}")
