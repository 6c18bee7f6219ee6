"""Add test suites and per-run test executions."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "test_suites",
        sa.Column("suite_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("coding_session_id", sa.String(), nullable=True),
        sa.Column("unit_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("test_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=True),
        sa.Column("test_code", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["coding_session_id"],
            ["coding_sessions.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("suite_id"),
    )
    op.create_index("ix_test_suites_project_id", "test_suites", ["project_id"])
    op.create_index("ix_test_suites_coding_session_id", "test_suites", ["coding_session_id"])
    op.create_index("ix_test_suites_test_type", "test_suites", ["test_type"])
    op.create_index("ix_test_suites_status", "test_suites", ["status"])

    op.create_table(
        "test_executions",
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("suite_id", sa.String(), nullable=False),
        sa.Column("qa_session_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_tests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("passed_tests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_tests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("skipped_tests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["suite_id"], ["test_suites.suite_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["qa_session_id"],
            ["qa_sessions.qa_session_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("execution_id"),
    )
    op.create_index(
        "idx_test_executions_suite_time",
        "test_executions",
        ["suite_id", "started_at"],
    )
    op.create_index("ix_test_executions_qa_session_id", "test_executions", ["qa_session_id"])
    op.create_index("ix_test_executions_status", "test_executions", ["status"])


def downgrade() -> None:
    op.drop_table("test_executions")
    op.drop_table("test_suites")
