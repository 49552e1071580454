"""Domain models for spec scheduling, execution and convergence."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class WorkStatus(str, Enum):
    """Per-batch work item lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({WorkStatus.SUCCEEDED, WorkStatus.FAILED, WorkStatus.BLOCKED})


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SERVER_OVERLOAD = "server_overload"
    FATAL = "fatal"

    @property
    def is_transient(self) -> bool:
        return self is not FailureClass.FATAL


class BatchKind(str, Enum):
    """Why a batch was scheduled."""

    BATCH = "batch"
    RERUN = "rerun"
    FIX = "fix"


class ConvergenceState(str, Enum):
    """Convergence loop states."""

    AUDITING = "auditing"
    REMEDIATING = "remediating"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class SpecNode:
    """One declared unit of work and the names it depends on."""

    name: str
    path: str
    depends_on: frozenset[str] = frozenset()
    source: str | None = None

    @classmethod
    def create(
        cls,
        name: str,
        *,
        path: str | None = None,
        depends_on: tuple[str, ...] | list[str] | frozenset[str] | set[str] = (),
        source: str | None = None,
    ) -> SpecNode:
        """Convenience constructor accepting any iterable of dependency names."""

        return cls(
            name=name,
            path=path if path is not None else name,
            depends_on=frozenset(depends_on),
            source=source,
        )


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one executor call."""

    success: bool
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    error: str | None = None
    output: str = ""
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class WorkItem:
    """Transient per-execution state of one spec inside a batch."""

    spec: SpecNode
    attempt: int = 0
    status: WorkStatus = WorkStatus.PENDING
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    error: str | None = None
    failure_class: FailureClass | None = None
    blocked_by: tuple[str, ...] = ()

    def to_outcome(self) -> SpecOutcome:
        return SpecOutcome(
            spec=self.spec,
            status=self.status,
            attempts=self.attempt,
            cost_usd=self.cost_usd,
            duration_seconds=self.duration_seconds,
            error=self.error,
            failure_class=self.failure_class,
            blocked_by=self.blocked_by,
        )


@dataclass(frozen=True, slots=True)
class SpecOutcome:
    """Immutable snapshot of a work item once its batch finished."""

    spec: SpecNode
    status: WorkStatus
    attempts: int = 0
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    error: str | None = None
    failure_class: FailureClass | None = None
    blocked_by: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Aggregate over one scheduling pass."""

    run_id: str
    kind: BatchKind
    started_at: datetime
    finished_at: datetime
    concurrency: int
    levels: tuple[tuple[str, ...], ...]
    outcomes: tuple[SpecOutcome, ...]
    wall_clock_seconds: float = 0.0
    cancelled: bool = False
    satisfied: tuple[str, ...] = ()

    @property
    def total_cost_usd(self) -> float:
        return sum(outcome.cost_usd for outcome in self.outcomes)

    @property
    def total_duration_seconds(self) -> float:
        return sum(outcome.duration_seconds for outcome in self.outcomes)

    @property
    def succeeded(self) -> list[str]:
        return self._names_with(WorkStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._names_with(WorkStatus.FAILED)

    @property
    def blocked(self) -> list[str]:
        return self._names_with(WorkStatus.BLOCKED)

    @property
    def not_started(self) -> list[str]:
        return self._names_with(WorkStatus.PENDING)

    @property
    def all_succeeded(self) -> bool:
        return all(outcome.status == WorkStatus.SUCCEEDED for outcome in self.outcomes)

    def outcome(self, name: str) -> SpecOutcome | None:
        for outcome in self.outcomes:
            if outcome.spec.name == name:
                return outcome
        return None

    def _names_with(self, status: WorkStatus) -> list[str]:
        return [outcome.spec.name for outcome in self.outcomes if outcome.status == status]


@dataclass(frozen=True, slots=True)
class StatusChange:
    """Progress notification emitted for every work item transition."""

    spec_name: str
    from_status: WorkStatus
    to_status: WorkStatus
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class ConvergenceRound:
    """Audit trail entry for one audit -> fix cycle."""

    round_number: int
    gap_count: int
    fixes_applied: bool
    duration_seconds: float
    cost_usd: float


@dataclass(slots=True)
class AuditResult:
    """Gap specs produced by one audit call."""

    gap_specs: list[SpecNode] = field(default_factory=list)
    cost_usd: float = 0.0


@dataclass(frozen=True, slots=True)
class ConvergenceReport:
    """Terminal result of the convergence loop."""

    state: ConvergenceState
    rounds: tuple[ConvergenceRound, ...]
    remaining_gaps: tuple[SpecNode, ...] = ()
    gap_dir: str | None = None
    fix_batches: tuple[BatchResult, ...] = ()

    @property
    def converged(self) -> bool:
        return self.state == ConvergenceState.CONVERGED

    @property
    def total_cost_usd(self) -> float:
        return sum(item.cost_usd for item in self.rounds)
