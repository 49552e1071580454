"""Persistent batch history backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable
from pathlib import Path

from sqlmodel import Session, col, select

from specrun.scheduler.models import (
    BatchKind,
    BatchResult,
    ConvergenceReport,
    ConvergenceRound,
    FailureClass,
    SpecNode,
    SpecOutcome,
    WorkStatus,
)
from specrun.storage.alembic_runner import upgrade_head
from specrun.storage.common import as_utc, build_sqlite_engine, utc_now
from specrun.storage.sqlmodel_models import BatchRun, BatchSpecOutcome, ConvergenceRoundRow


class BatchRepository:
    """Stores batch results so later processes can rerun failures."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def save_batch(self, result: BatchResult, *, spec_dir: Path | None = None) -> None:
        with Session(self.engine) as session:
            session.add(
                BatchRun(
                    run_id=result.run_id,
                    kind=result.kind.value,
                    spec_dir=str(spec_dir) if spec_dir is not None else None,
                    concurrency=result.concurrency,
                    levels_json=json.dumps([list(level) for level in result.levels]),
                    started_at=result.started_at,
                    finished_at=result.finished_at,
                    wall_clock_seconds=result.wall_clock_seconds,
                    total_cost_usd=result.total_cost_usd,
                    cancelled=result.cancelled,
                    satisfied_json=json.dumps(list(result.satisfied)),
                    created_at=utc_now(),
                ),
            )
            session.flush()
            for position, outcome in enumerate(result.outcomes):
                session.add(_to_outcome_row(result.run_id, position, outcome))
            session.commit()

    def get_batch(self, run_id: str) -> BatchResult | None:
        with Session(self.engine) as session:
            run = session.exec(select(BatchRun).where(BatchRun.run_id == run_id)).one_or_none()
            if run is None:
                return None
            return self._load_batch(session, run)

    def latest_batch(self, kinds: Iterable[BatchKind] | None = None) -> BatchResult | None:
        """Most recently stored batch, optionally restricted to ``kinds``."""

        statement = select(BatchRun).order_by(col(BatchRun.created_at).desc()).limit(1)
        if kinds is not None:
            statement = statement.where(col(BatchRun.kind).in_([kind.value for kind in kinds]))
        with Session(self.engine) as session:
            run = session.exec(statement).first()
            if run is None:
                return None
            return self._load_batch(session, run)

    def batch_spec_dir(self, run_id: str) -> str | None:
        with Session(self.engine) as session:
            run = session.exec(select(BatchRun).where(BatchRun.run_id == run_id)).one_or_none()
            return run.spec_dir if run is not None else None

    def list_batches(
        self,
        *,
        kind: BatchKind | None = None,
        limit: int = 20,
    ) -> list[BatchResult]:
        """List recent batches, newest first."""

        with Session(self.engine) as session:
            statement = select(BatchRun).order_by(col(BatchRun.created_at).desc()).limit(limit)
            if kind is not None:
                statement = statement.where(BatchRun.kind == kind.value)
            runs = session.exec(statement).all()
            return [self._load_batch(session, run) for run in runs]

    def save_rounds(self, report: ConvergenceReport, *, convergence_id: str | None = None) -> str:
        """Persist the round history of one convergence loop; returns its id."""

        convergence_id = convergence_id or uuid.uuid4().hex
        now = utc_now()
        last = len(report.rounds) - 1
        with Session(self.engine) as session:
            for index, entry in enumerate(report.rounds):
                session.add(
                    ConvergenceRoundRow(
                        convergence_id=convergence_id,
                        round_number=entry.round_number,
                        gap_count=entry.gap_count,
                        fixes_applied=entry.fixes_applied,
                        duration_seconds=entry.duration_seconds,
                        cost_usd=entry.cost_usd,
                        final_state=report.state.value if index == last else None,
                        created_at=now,
                    ),
                )
            session.commit()
        return convergence_id

    def list_rounds(self, convergence_id: str | None = None) -> list[ConvergenceRound]:
        """Rounds of one convergence loop, defaulting to the latest stored one."""

        with Session(self.engine) as session:
            if convergence_id is None:
                latest = session.exec(
                    select(ConvergenceRoundRow)
                    .order_by(col(ConvergenceRoundRow.created_at).desc())
                    .limit(1),
                ).first()
                if latest is None:
                    return []
                convergence_id = latest.convergence_id
            rows = session.exec(
                select(ConvergenceRoundRow)
                .where(ConvergenceRoundRow.convergence_id == convergence_id)
                .order_by(col(ConvergenceRoundRow.round_number).asc()),
            ).all()
        return [
            ConvergenceRound(
                round_number=row.round_number,
                gap_count=row.gap_count,
                fixes_applied=row.fixes_applied,
                duration_seconds=row.duration_seconds,
                cost_usd=row.cost_usd,
            )
            for row in rows
        ]

    def _load_batch(self, session: Session, run: BatchRun) -> BatchResult:
        rows = session.exec(
            select(BatchSpecOutcome)
            .where(BatchSpecOutcome.run_id == run.run_id)
            .order_by(col(BatchSpecOutcome.position).asc()),
        ).all()
        return BatchResult(
            run_id=run.run_id,
            kind=BatchKind(run.kind),
            started_at=as_utc(run.started_at),
            finished_at=as_utc(run.finished_at),
            concurrency=run.concurrency,
            levels=tuple(tuple(level) for level in json.loads(run.levels_json)),
            outcomes=tuple(_to_outcome(row) for row in rows),
            wall_clock_seconds=run.wall_clock_seconds,
            cancelled=run.cancelled,
            satisfied=tuple(json.loads(run.satisfied_json)),
        )


def _to_outcome_row(run_id: str, position: int, outcome: SpecOutcome) -> BatchSpecOutcome:
    return BatchSpecOutcome(
        run_id=run_id,
        position=position,
        spec_name=outcome.spec.name,
        spec_path=outcome.spec.path,
        depends_on_json=json.dumps(sorted(outcome.spec.depends_on)),
        source=outcome.spec.source,
        status=outcome.status.value,
        attempts=outcome.attempts,
        cost_usd=outcome.cost_usd,
        duration_seconds=outcome.duration_seconds,
        error=outcome.error,
        failure_class=outcome.failure_class.value if outcome.failure_class is not None else None,
        blocked_by_json=json.dumps(list(outcome.blocked_by)),
    )


def _to_outcome(row: BatchSpecOutcome) -> SpecOutcome:
    return SpecOutcome(
        spec=SpecNode(
            name=row.spec_name,
            path=row.spec_path,
            depends_on=frozenset(json.loads(row.depends_on_json)),
            source=row.source,
        ),
        status=WorkStatus(row.status),
        attempts=row.attempts,
        cost_usd=row.cost_usd,
        duration_seconds=row.duration_seconds,
        error=row.error,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        blocked_by=tuple(json.loads(row.blocked_by_json)),
    )
