from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from specrun.scheduler.models import (
    BatchKind,
    BatchResult,
    ConvergenceReport,
    ConvergenceRound,
    ConvergenceState,
    FailureClass,
    SpecNode,
    SpecOutcome,
    WorkStatus,
)
from specrun.scheduler.repository import BatchRepository

pytestmark = [
    allure.epic("Spec Scheduling"),
    allure.feature("Batch History"),
]

_STARTED = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)


def _batch(run_id: str, *, kind: BatchKind = BatchKind.BATCH) -> BatchResult:
    a = SpecNode.create("a.md", path="/specs/a.md")
    b = SpecNode.create("b.md", path="/specs/b.md", depends_on=["a.md"], source="audit")
    c = SpecNode.create("c.md", path="/specs/c.md", depends_on=["b.md"])
    return BatchResult(
        run_id=run_id,
        kind=kind,
        started_at=_STARTED,
        finished_at=_STARTED + timedelta(minutes=5),
        concurrency=2,
        levels=(("a.md",), ("b.md",), ("c.md",)),
        outcomes=(
            SpecOutcome(spec=a, status=WorkStatus.SUCCEEDED, attempts=1, cost_usd=0.5),
            SpecOutcome(
                spec=b,
                status=WorkStatus.FAILED,
                attempts=3,
                cost_usd=1.25,
                duration_seconds=42.0,
                error="HTTP 429",
                failure_class=FailureClass.RATE_LIMIT,
            ),
            SpecOutcome(
                spec=c,
                status=WorkStatus.BLOCKED,
                error="Blocked by: b.md",
                blocked_by=("b.md",),
            ),
        ),
        wall_clock_seconds=300.0,
        satisfied=("base.md",),
    )


@pytest.fixture()
def repository(tmp_path: Path):
    repo = BatchRepository(tmp_path / "nested" / "history.db")
    repo.init_schema()
    yield repo
    repo.close()


def test_batch_round_trip(repository: BatchRepository) -> None:
    original = _batch("run-1")
    repository.save_batch(original, spec_dir=Path("/specs"))

    loaded = repository.get_batch("run-1")

    assert loaded == original
    assert loaded.total_cost_usd == pytest.approx(1.75)
    assert repository.batch_spec_dir("run-1") == str(Path("/specs"))


def test_unknown_batch_is_none(repository: BatchRepository) -> None:
    assert repository.get_batch("missing") is None
    assert repository.latest_batch() is None
    assert repository.batch_spec_dir("missing") is None


def test_latest_batch_and_listing(repository: BatchRepository) -> None:
    repository.save_batch(_batch("run-1"))
    repository.save_batch(_batch("run-2", kind=BatchKind.RERUN))
    repository.save_batch(_batch("run-3", kind=BatchKind.FIX))

    latest = repository.latest_batch()

    assert latest is not None
    assert latest.run_id == "run-3"
    assert [batch.run_id for batch in repository.list_batches()] == ["run-3", "run-2", "run-1"]
    assert [batch.run_id for batch in repository.list_batches(limit=2)] == ["run-3", "run-2"]
    assert [batch.run_id for batch in repository.list_batches(kind=BatchKind.RERUN)] == ["run-2"]

    rerunnable = repository.latest_batch(kinds=(BatchKind.BATCH, BatchKind.RERUN))
    first_run = repository.latest_batch(kinds=(BatchKind.BATCH,))

    assert rerunnable is not None and rerunnable.run_id == "run-2"
    assert first_run is not None and first_run.run_id == "run-1"
    assert repository.latest_batch(kinds=()) is None


def test_rounds_round_trip(repository: BatchRepository) -> None:
    rounds = (
        ConvergenceRound(
            round_number=1,
            gap_count=2,
            fixes_applied=True,
            duration_seconds=10.0,
            cost_usd=2.5,
        ),
        ConvergenceRound(
            round_number=2,
            gap_count=0,
            fixes_applied=False,
            duration_seconds=3.0,
            cost_usd=0.5,
        ),
    )
    first_id = repository.save_rounds(
        ConvergenceReport(state=ConvergenceState.EXHAUSTED, rounds=rounds[:1]),
    )
    second_id = repository.save_rounds(
        ConvergenceReport(state=ConvergenceState.CONVERGED, rounds=rounds),
        convergence_id="conv-2",
    )

    assert second_id == "conv-2"
    assert repository.list_rounds() == list(rounds)
    assert repository.list_rounds(first_id) == list(rounds[:1])
    assert repository.list_rounds("unknown") == []


def test_no_rounds_recorded(repository: BatchRepository) -> None:
    assert repository.list_rounds() == []


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = BatchRepository(db_path)
    first.init_schema()
    first.save_batch(_batch("run-1"))
    first.close()

    second = BatchRepository(db_path)
    second.init_schema()

    assert second.get_batch("run-1") is not None
    second.close()
