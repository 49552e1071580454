from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import ECHO_AGENT_AUDIT_TEMPLATE, ECHO_AGENT_RUN_TEMPLATE, write_spec

from specrun import __version__
from specrun.main import specrun
from specrun.scheduler.models import (
    BatchKind,
    BatchResult,
    SpecNode,
    SpecOutcome,
    WorkStatus,
)
from specrun.scheduler.repository import BatchRepository

pytestmark = [
    allure.epic("Spec Scheduling"),
    allure.feature("Command Line"),
]


@pytest.fixture()
def project(tmp_path: Path, monkeypatch) -> dict[str, Path]:
    monkeypatch.setenv("SPECRUN_WORKDIR", str(tmp_path / "runs"))
    monkeypatch.setenv("SPECRUN_RETRY_BASE_DELAY_MS", "1")
    monkeypatch.setenv("SPECRUN_RETRY_MAX_BACKOFF_MS", "2")
    spec_dir = tmp_path / "specs"
    write_spec(spec_dir, "01-schema.md")
    write_spec(spec_dir, "02-api.md", depends=("01-schema.md",))
    write_spec(spec_dir, "03-cli.md", depends=("02-api.md",))
    codebase = tmp_path / "code"
    codebase.mkdir()
    return {"specs": spec_dir, "code": codebase, "db": tmp_path / "history.db"}


def _run_args(project: dict[str, Path], *extra: str) -> list[str]:
    return [
        "run",
        str(project["specs"]),
        "--db-path",
        str(project["db"]),
        "--codebase",
        str(project["code"]),
        "--agent-command",
        ECHO_AGENT_RUN_TEMPLATE,
        "--concurrency",
        "2",
        *extra,
    ]


def test_version() -> None:
    result = CliRunner().invoke(specrun, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_plan_lists_levels(project: dict[str, Path]) -> None:
    result = CliRunner().invoke(specrun, ["plan", str(project["specs"])])

    assert result.exit_code == 0, result.output
    assert f"Specs: 3 in {project['specs']}" in result.output
    assert "Level 0: 01-schema.md" in result.output
    assert "Level 1: 02-api.md" in result.output
    assert "  03-cli.md <- 02-api.md" in result.output


def test_plan_reports_cycles(tmp_path: Path) -> None:
    spec_dir = tmp_path / "specs"
    write_spec(spec_dir, "a.md", depends=("b.md",))
    write_spec(spec_dir, "b.md", depends=("a.md",))

    result = CliRunner().invoke(specrun, ["plan", str(spec_dir)])

    assert result.exit_code == 1
    assert "Circular dependency detected: a.md → b.md → a.md" in result.output


def test_plan_reports_unresolved_dependencies(tmp_path: Path) -> None:
    spec_dir = tmp_path / "specs"
    write_spec(spec_dir, "a.md", depends=("ghost.md",))

    result = CliRunner().invoke(specrun, ["plan", str(spec_dir)])

    assert result.exit_code == 1
    assert 'a.md depends on "ghost.md"' in result.output


def test_run_missing_spec_dir_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        specrun,
        ["run", str(tmp_path / "absent"), "--db-path", str(tmp_path / "h.db")],
    )

    assert result.exit_code == 1
    assert "Spec directory not found" in result.output


def test_run_all_specs_and_show_history(project: dict[str, Path]) -> None:
    runner = CliRunner()

    result = runner.invoke(specrun, _run_args(project))

    assert result.exit_code == 0, result.output
    assert "Summary: succeeded=3 failed=0 blocked=0 not_started=0 cost=$0.7500" in result.output
    for name in ("01-schema.md", "02-api.md", "03-cli.md"):
        assert (project["code"] / ".echo-agent" / f"{name}.done").is_file()

    history = runner.invoke(specrun, ["history", "--db-path", str(project["db"])])

    assert history.exit_code == 0, history.output
    assert "succeeded=3 failed=0" in history.output


def test_failed_run_then_rerun_failed(project: dict[str, Path]) -> None:
    runner = CliRunner()
    marker_dir = project["code"] / ".echo-agent"
    marker_dir.mkdir()
    fail_marker = marker_dir / "02-api.md.fail"
    fail_marker.write_text("schema mismatch\n", "utf-8")

    first = runner.invoke(specrun, _run_args(project))

    assert first.exit_code == 1, first.output
    assert "succeeded=1 failed=1 blocked=1" in first.output
    assert "Blocked by: 02-api.md" in first.output
    assert "Rerun with: specrun rerun-failed --run-id" in first.output

    fail_marker.unlink()
    rerun = runner.invoke(
        specrun,
        [
            "rerun-failed",
            "--db-path",
            str(project["db"]),
            "--codebase",
            str(project["code"]),
            "--agent-command",
            ECHO_AGENT_RUN_TEMPLATE,
        ],
    )

    assert rerun.exit_code == 0, rerun.output
    assert "Rerun of batch" in rerun.output
    assert "02-api.md, 03-cli.md" in rerun.output
    assert "Summary: succeeded=2 failed=0" in rerun.output

    again = runner.invoke(specrun, ["rerun-failed", "--db-path", str(project["db"])])

    assert again.exit_code == 0, again.output
    assert "nothing to rerun" in again.output


def test_rerun_failed_without_history(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        specrun,
        ["rerun-failed", "--db-path", str(tmp_path / "empty.db")],
    )

    assert result.exit_code == 1
    assert "No stored batch found" in result.output


def test_history_unknown_run_id(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        specrun,
        ["history", "--db-path", str(tmp_path / "h.db"), "--run-id", "nope"],
    )

    assert result.exit_code == 1
    assert "Batch not found: nope" in result.output


def test_history_when_empty(tmp_path: Path) -> None:
    result = CliRunner().invoke(specrun, ["history", "--db-path", str(tmp_path / "h.db")])

    assert result.exit_code == 0
    assert "No batches recorded." in result.output


def test_converge_until_audit_is_clean(project: dict[str, Path]) -> None:
    runner = CliRunner()

    result = runner.invoke(
        specrun,
        [
            "converge",
            str(project["specs"]),
            "--db-path",
            str(project["db"]),
            "--codebase",
            str(project["code"]),
            "--agent-command",
            ECHO_AGENT_RUN_TEMPLATE,
            "--audit-command",
            ECHO_AGENT_AUDIT_TEMPLATE,
        ],
    )

    assert result.exit_code == 0, result.output
    assert "converged after 2 round(s)" in result.output
    assert "Round 1: gaps=3 fixes_applied=yes" in result.output
    assert "Round 2: gaps=0 fixes_applied=no" in result.output
    assert list((project["specs"] / "audit").iterdir()) == []

    history = runner.invoke(specrun, ["history", "--db-path", str(project["db"])])

    assert "fix" in history.output
    assert "Latest convergence rounds:" in history.output


def test_converge_exhausted_exits_non_zero(project: dict[str, Path]) -> None:
    result = CliRunner().invoke(
        specrun,
        [
            "converge",
            str(project["specs"]),
            "--db-path",
            str(project["db"]),
            "--codebase",
            str(project["code"]),
            "--max-rounds",
            "1",
            "--agent-command",
            ECHO_AGENT_RUN_TEMPLATE,
            "--audit-command",
            ECHO_AGENT_AUDIT_TEMPLATE,
        ],
    )

    assert result.exit_code == 1, result.output
    assert "exhausted after 1 round(s)" in result.output
    assert "Remaining gap specs (3)" in result.output
    assert (project["specs"] / "audit" / "01-schema.md").is_file()


def test_invalid_concurrency_is_reported(project: dict[str, Path]) -> None:
    result = CliRunner().invoke(
        specrun,
        [
            "run",
            str(project["specs"]),
            "--db-path",
            str(project["db"]),
            "--concurrency",
            "lots",
        ],
    )

    assert result.exit_code == 1
    assert "Invalid concurrency value" in result.output


def test_rerun_failed_skips_newer_fix_batches(project: dict[str, Path], tmp_path: Path) -> None:
    runner = CliRunner()
    marker_dir = project["code"] / ".echo-agent"
    marker_dir.mkdir()
    (marker_dir / "02-api.md.fail").write_text("schema mismatch\n", "utf-8")
    first = runner.invoke(specrun, _run_args(project))
    assert first.exit_code == 1, first.output

    repository = BatchRepository(project["db"])
    repository.init_schema()
    (batch,) = repository.list_batches()
    gap = SpecNode.create("fix-api.md", path=str(tmp_path / "gone" / "fix-api.md"))
    started = datetime.now(tz=UTC)
    repository.save_batch(
        BatchResult(
            run_id="fix-run",
            kind=BatchKind.FIX,
            started_at=started,
            finished_at=started,
            concurrency=1,
            levels=(("fix-api.md",),),
            outcomes=(SpecOutcome(spec=gap, status=WorkStatus.FAILED, attempts=1),),
        ),
        spec_dir=tmp_path / "gone",
    )
    repository.close()

    (marker_dir / "02-api.md.fail").unlink()
    rerun = runner.invoke(
        specrun,
        [
            "rerun-failed",
            "--db-path",
            str(project["db"]),
            "--codebase",
            str(project["code"]),
            "--agent-command",
            ECHO_AGENT_RUN_TEMPLATE,
        ],
    )

    assert rerun.exit_code == 0, rerun.output
    assert f"Rerun of batch {batch.run_id}: 02-api.md, 03-cli.md" in rerun.output
    assert "fix-api.md" not in rerun.output
