"""Create job queue and coding session tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "coding_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("unit_id", sa.String(), nullable=True),
        sa.Column("programmer_type", sa.String(), nullable=False, server_default="fullstack"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("test_progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "implementation_progress",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("tdd_cycle_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index("ix_coding_sessions_project_id", "coding_sessions", ["project_id"])
    op.create_index("ix_coding_sessions_unit_id", "coding_sessions", ["unit_id"])
    op.create_index("ix_coding_sessions_status", "coding_sessions", ["status"])

    op.create_table(
        "coding_session_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["coding_sessions.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "idx_coding_session_events_session_time",
        "coding_session_events",
        ["session_id", "created_at"],
    )

    op.create_table(
        "qa_sessions",
        sa.Column("qa_session_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("coding_session_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_tests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("passed_tests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_tests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("skipped_tests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["coding_session_id"],
            ["coding_sessions.session_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("qa_session_id"),
    )
    op.create_index("ix_qa_sessions_project_id", "qa_sessions", ["project_id"])
    op.create_index("ix_qa_sessions_coding_session_id", "qa_sessions", ["coding_session_id"])
    op.create_index("ix_qa_sessions_status", "qa_sessions", ["status"])

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("phase", sa.String(), nullable=True),
        sa.Column("coding_session_id", sa.String(), nullable=True),
        sa.Column("qa_session_id", sa.String(), nullable=True),
        sa.Column("args_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["coding_session_id"],
            ["coding_sessions.session_id"],
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["qa_session_id"],
            ["qa_sessions.qa_session_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("idx_jobs_queue", "jobs", ["status", "created_at"])
    op.create_index("ix_jobs_project_id", "jobs", ["project_id"])
    op.create_index("ix_jobs_phase", "jobs", ["phase"])
    op.create_index("ix_jobs_coding_session_id", "jobs", ["coding_session_id"])
    op.create_index("ix_jobs_qa_session_id", "jobs", ["qa_session_id"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_worker_id", "jobs", ["worker_id"])

    op.create_table(
        "job_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_job_events_job_time", "job_events", ["job_id", "created_at"])
    op.create_index("ix_job_events_event_type", "job_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_job_events_event_type", table_name="job_events")
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_table("job_events")
    op.drop_table("jobs")
    op.drop_table("qa_sessions")
    op.drop_index("idx_coding_session_events_session_time", table_name="coding_session_events")
    op.drop_table("coding_session_events")
    op.drop_table("coding_sessions")
