"""SQLModel ORM tables for batch history storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class BatchRun(SQLModel, table=True):
    __tablename__ = "batch_runs"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    spec_dir: str | None = None
    concurrency: int
    levels_json: str = Field(sa_column=Column(Text, nullable=False))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    wall_clock_seconds: float = 0.0
    total_cost_usd: float = 0.0
    cancelled: bool = False
    satisfied_json: str = "[]"
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class BatchSpecOutcome(SQLModel, table=True):
    __tablename__ = "batch_spec_outcomes"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", "spec_name", name="uq_batch_spec_outcomes_run_spec"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("batch_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    spec_name: str
    spec_path: str
    depends_on_json: str = "[]"
    source: str | None = None
    status: str = Field(index=True)
    attempts: int = 0
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    failure_class: str | None = None
    blocked_by_json: str = "[]"


class ConvergenceRoundRow(SQLModel, table=True):
    __tablename__ = "convergence_rounds"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "convergence_id",
            "round_number",
            name="uq_convergence_rounds_convergence_round",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    convergence_id: str = Field(index=True)
    round_number: int
    gap_count: int
    fixes_applied: bool = False
    duration_seconds: float = 0.0
    cost_usd: float = 0.0
    final_state: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
