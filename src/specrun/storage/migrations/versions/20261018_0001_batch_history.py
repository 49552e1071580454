"""Batch run history, per-spec outcomes and convergence rounds."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "batch_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("spec_dir", sa.String(), nullable=True),
        sa.Column("concurrency", sa.Integer(), nullable=False),
        sa.Column("levels_json", sa.Text(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("wall_clock_seconds", sa.Float(), nullable=False),
        sa.Column("total_cost_usd", sa.Float(), nullable=False),
        sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("satisfied_json", sa.String(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_batch_runs_kind", "batch_runs", ["kind"], unique=False)
    op.create_index("ix_batch_runs_created_at", "batch_runs", ["created_at"], unique=False)

    op.create_table(
        "batch_spec_outcomes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("spec_name", sa.String(), nullable=False),
        sa.Column("spec_path", sa.String(), nullable=False),
        sa.Column("depends_on_json", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("blocked_by_json", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["batch_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "spec_name", name="uq_batch_spec_outcomes_run_spec"),
    )
    op.create_index(
        "ix_batch_spec_outcomes_run_id",
        "batch_spec_outcomes",
        ["run_id"],
        unique=False,
    )
    op.create_index(
        "ix_batch_spec_outcomes_status",
        "batch_spec_outcomes",
        ["status"],
        unique=False,
    )

    op.create_table(
        "convergence_rounds",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("convergence_id", sa.String(), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("gap_count", sa.Integer(), nullable=False),
        sa.Column("fixes_applied", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("duration_seconds", sa.Float(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False),
        sa.Column("final_state", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "convergence_id",
            "round_number",
            name="uq_convergence_rounds_convergence_round",
        ),
    )
    op.create_index(
        "ix_convergence_rounds_convergence_id",
        "convergence_rounds",
        ["convergence_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_convergence_rounds_convergence_id", table_name="convergence_rounds")
    op.drop_table("convergence_rounds")
    op.drop_index("ix_batch_spec_outcomes_status", table_name="batch_spec_outcomes")
    op.drop_index("ix_batch_spec_outcomes_run_id", table_name="batch_spec_outcomes")
    op.drop_table("batch_spec_outcomes")
    op.drop_index("ix_batch_runs_created_at", table_name="batch_runs")
    op.drop_index("ix_batch_runs_kind", table_name="batch_runs")
    op.drop_table("batch_runs")
