"""SQLModel ORM tables for the job queue, coding sessions and test suites."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class CodingSessionRow(SQLModel, table=True):
    __tablename__ = "coding_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    unit_id: str | None = Field(default=None, index=True)
    programmer_type: str = Field(default="fullstack")
    status: str = Field(index=True)
    progress: int = Field(default=0)
    test_progress: int = Field(default=0)
    implementation_progress: int = Field(default=0)
    tdd_cycle_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class CodingSessionEventRow(SQLModel, table=True):
    __tablename__ = "coding_session_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_coding_session_events_session_time", "session_id", "created_at"),
    )

    event_id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("coding_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QaSessionRow(SQLModel, table=True):
    __tablename__ = "qa_sessions"  # type: ignore[bad-override]

    qa_session_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    coding_session_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("coding_sessions.session_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    status: str = Field(index=True)
    total_tests: int = Field(default=0)
    passed_tests: int = Field(default=0)
    failed_tests: int = Field(default=0)
    skipped_tests: int = Field(default=0)
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_queue", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    provider: str
    mode: str
    phase: str | None = Field(default=None, index=True)
    coding_session_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("coding_sessions.session_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    qa_session_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("qa_sessions.qa_session_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    args_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    output: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    event_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TestSuiteRow(SQLModel, table=True):
    __tablename__ = "test_suites"  # type: ignore[bad-override]

    suite_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    coding_session_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("coding_sessions.session_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    unit_id: str | None = None
    name: str
    test_type: str = Field(index=True)
    status: str = Field(index=True)
    file_path: str | None = None
    test_code: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    generated_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TestExecutionRow(SQLModel, table=True):
    __tablename__ = "test_executions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_test_executions_suite_time", "suite_id", "started_at"),)

    execution_id: str = Field(primary_key=True)
    suite_id: str = Field(
        sa_column=Column(
            ForeignKey("test_suites.suite_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    qa_session_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("qa_sessions.qa_session_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    status: str = Field(index=True)
    total_tests: int = Field(default=0)
    passed_tests: int = Field(default=0)
    failed_tests: int = Field(default=0)
    skipped_tests: int = Field(default=0)
    error: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
