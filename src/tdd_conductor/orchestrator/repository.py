"""Persistent job queue, coding session and test suite repository."""

from __future__ import annotations

import json
from collections.abc import Collection, Iterable
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func, literal_column, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from tdd_conductor.orchestrator.models import (
    TERMINAL_SESSION_STATUSES,
    AgentMode,
    CodingSessionView,
    JobCreate,
    JobDetails,
    JobEventType,
    JobEventView,
    JobPhase,
    JobStatus,
    JobView,
    QaSessionStatus,
    QaSessionView,
    SessionEventView,
    SessionStatus,
    TestCounts,
    TestExecutionStatus,
    TestExecutionView,
    TestSuiteCreate,
    TestSuiteStatus,
    TestSuiteView,
    TestType,
)
from tdd_conductor.orchestrator.sanitization import sanitize_preview
from tdd_conductor.storage.alembic_runner import upgrade_head
from tdd_conductor.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_optional,
    utc_now,
)
from tdd_conductor.storage.sqlmodel_models import (
    CodingSessionEventRow,
    CodingSessionRow,
    JobEventRow,
    JobRow,
    QaSessionRow,
    TestExecutionRow,
    TestSuiteRow,
)

_TERMINAL_SESSION_VALUES = tuple(status.value for status in TERMINAL_SESSION_STATUSES)


class OrchestratorRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Implements the `JobStore` contract plus the session, QA and test-suite
    records the job pipeline reads and writes. Every status transition is a
    single guarded ``UPDATE`` whose rowcount tells whether it applied.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- jobs ------------------------------------------------------------------

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a pending job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        args = payload.build_args()
        with Session(self.engine) as session:
            row = JobRow(
                job_id=job_id,
                project_id=payload.project_id,
                provider=payload.provider,
                mode=payload.mode.value,
                phase=payload.phase.value if payload.phase is not None else None,
                coding_session_id=payload.coding_session_id,
                qa_session_id=payload.qa_session_id,
                args_json=json.dumps(args, ensure_ascii=False, sort_keys=True),
                status=JobStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def find_pending(self, *, excluding_ids: Collection[str] = (), limit: int) -> list[JobView]:
        """Oldest-first pending jobs whose coding session is not paused."""

        if limit <= 0:
            return []
        with Session(self.engine) as session:
            statement = (
                select(JobRow)
                .where(JobRow.status == JobStatus.PENDING.value, _session_not_paused())
                .order_by(col(JobRow.created_at).asc(), literal_column("jobs.rowid").asc())
                .limit(limit)
            )
            if excluding_ids:
                statement = statement.where(col(JobRow.job_id).not_in(list(excluding_ids)))
            return [_to_job_view(row) for row in session.exec(statement).all()]

    def claim(self, job_id: str, *, worker_id: str | None = None) -> bool:
        """Move a pending job to running unless its session got paused meanwhile."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PENDING.value,
                    _session_not_paused(),
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                    worker_id=worker_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_job_event(
                session=session,
                job_id=job_id,
                event_type=JobEventType.STARTED,
                details={"worker_id": worker_id},
            )
            session.commit()
            return True

    def complete(self, job_id: str, *, output: str) -> bool:
        """Mark a running job completed; a second call is a no-op returning False."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    output=output,
                    error=None,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_job_event(
                session=session,
                job_id=job_id,
                event_type=JobEventType.COMPLETED,
                details={
                    "output_chars": len(output),
                    "output_preview": sanitize_preview(output),
                },
            )
            session.commit()
            return True

    def fail(self, job_id: str, *, error: str, output: str | None = None) -> bool:
        """Mark a pending or running job failed, keeping the raw output."""

        now = utc_now()
        values: dict[str, Any] = {
            "status": JobStatus.FAILED.value,
            "error": error,
            "finished_at": to_db_datetime(now),
            "updated_at": to_db_datetime(now),
        }
        if output is not None:
            values["output"] = output
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status).in_(
                        (JobStatus.PENDING.value, JobStatus.RUNNING.value),
                    ),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            details: dict[str, Any] = {"error": sanitize_preview(error)}
            if output:
                details["output_preview"] = sanitize_preview(output)
            self._add_job_event(
                session=session,
                job_id=job_id,
                event_type=JobEventType.FAILED,
                details=details,
            )
            session.commit()
            return True

    def append_event(
        self,
        job_id: str,
        event_type: JobEventType,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Append one write-once event to the job audit trail."""

        with Session(self.engine) as session:
            self._add_job_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                details=payload or {},
            )
            session.commit()

    def append_output(self, job_id: str, chunk: str) -> None:
        """Append a streamed chunk to the accumulated output of a running job."""

        if not chunk:
            return
        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                )
                .values(
                    output=func.coalesce(col(JobRow.output), "") + chunk,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def find_stuck(
        self,
        *,
        long_timeout_seconds: float,
        short_timeout_seconds: float,
        tracked_ids: Collection[str] = (),
    ) -> list[JobView]:
        """Running jobs past the long timeout, or past the short one when untracked."""

        now = utc_now()
        long_cutoff = to_db_datetime(now - timedelta(seconds=long_timeout_seconds))
        short_cutoff = to_db_datetime(now - timedelta(seconds=short_timeout_seconds))
        untracked = col(JobRow.started_at) < short_cutoff
        if tracked_ids:
            untracked = untracked & col(JobRow.job_id).not_in(list(tracked_ids))
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(
                    JobRow.status == JobStatus.RUNNING.value,
                    col(JobRow.started_at).is_not(None),
                    or_(col(JobRow.started_at) < long_cutoff, untracked),
                )
                .order_by(col(JobRow.started_at).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            return _to_job_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> JobDetails | None:
        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            if row is None:
                return None
            events = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.event_id).asc()),
            ).all()
            return JobDetails(
                job=_to_job_view(row),
                events=[_to_job_event_view(event) for event in events],
            )

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        coding_session_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        with Session(self.engine) as session:
            statement = select(JobRow)
            if status is not None:
                statement = statement.where(JobRow.status == status.value)
            if coding_session_id is not None:
                statement = statement.where(JobRow.coding_session_id == coding_session_id)
            rows = session.exec(
                statement.order_by(
                    col(JobRow.created_at).desc(),
                    literal_column("jobs.rowid").desc(),
                ).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def fail_pending_jobs_for_session(self, session_id: str, *, error: str) -> int:
        """Fail queued jobs of a session so they never reach the agent."""

        pending = [
            job.job_id
            for job in self.list_jobs(
                status=JobStatus.PENDING,
                coding_session_id=session_id,
                limit=1_000,
            )
        ]
        return sum(1 for job_id in pending if self.fail(job_id, error=error))

    # -- coding sessions -------------------------------------------------------

    def create_session(
        self,
        *,
        project_id: str,
        unit_id: str | None = None,
        programmer_type: str = "fullstack",
        session_id: str | None = None,
    ) -> CodingSessionView:
        now = utc_now()
        with Session(self.engine) as session:
            row = CodingSessionRow(
                session_id=session_id or str(uuid4()),
                project_id=project_id,
                unit_id=unit_id,
                programmer_type=programmer_type,
                status=SessionStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session_view(row)

    def get_session(self, session_id: str) -> CodingSessionView | None:
        with Session(self.engine) as session:
            row = session.get(CodingSessionRow, session_id)
            return _to_session_view(row) if row is not None else None

    def list_sessions(
        self,
        *,
        status: SessionStatus | None = None,
        limit: int = 50,
    ) -> list[CodingSessionView]:
        with Session(self.engine) as session:
            statement = select(CodingSessionRow)
            if status is not None:
                statement = statement.where(CodingSessionRow.status == status.value)
            rows = session.exec(
                statement.order_by(col(CodingSessionRow.created_at).desc()).limit(limit),
            ).all()
            return [_to_session_view(row) for row in rows]

    def transition_session(  # noqa: PLR0913
        self,
        session_id: str,
        *,
        from_statuses: Iterable[SessionStatus],
        to_status: SessionStatus,
        error: str | None = None,
        clear_error: bool = False,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Guarded status change; no-op returning False when the source state differs."""

        now = utc_now()
        values: dict[str, Any] = {
            "status": to_status.value,
            "updated_at": to_db_datetime(now),
        }
        if error is not None:
            values["error"] = error
        elif clear_error:
            values["error"] = None
        if to_status in TERMINAL_SESSION_STATUSES:
            values["completed_at"] = to_db_datetime(now)
        elif clear_error:
            values["completed_at"] = None
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CodingSessionRow)
                .where(
                    col(CodingSessionRow.session_id) == session_id,
                    col(CodingSessionRow.status).in_(
                        [status.value for status in from_statuses],
                    ),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if event_type is not None:
                self._add_session_event(
                    session=session,
                    session_id=session_id,
                    event_type=event_type,
                    details=details or {},
                )
            session.commit()
            return True

    def update_session_progress(  # noqa: PLR0913
        self,
        session_id: str,
        *,
        status: SessionStatus | None = None,
        progress: int | None = None,
        test_progress: int | None = None,
        implementation_progress: int | None = None,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Update progress counters of a non-terminal session.

        A paused session keeps its ``paused`` status; only counters move.
        """

        now = utc_now()
        values: dict[str, Any] = {"updated_at": to_db_datetime(now)}
        if status is not None:
            values["status"] = _keep_paused(status)
            if status in TERMINAL_SESSION_STATUSES:
                values["completed_at"] = to_db_datetime(now)
        if progress is not None:
            values["progress"] = progress
        if test_progress is not None:
            values["test_progress"] = test_progress
        if implementation_progress is not None:
            values["implementation_progress"] = implementation_progress
        return self._guarded_session_update(
            session_id=session_id,
            values=values,
            event_type=event_type,
            details=details,
        )

    def replace_tdd_cycle(  # noqa: PLR0913
        self,
        session_id: str,
        *,
        cycle: dict[str, Any],
        status: SessionStatus,
        progress: int,
        implementation_progress: int | None = None,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Persist the whole TDD cycle state with the session status it implies.

        Terminal sessions are left untouched and a paused session stays paused.
        """

        now = utc_now()
        values: dict[str, Any] = {
            "tdd_cycle_json": json.dumps(cycle, ensure_ascii=False, sort_keys=True),
            "status": _keep_paused(status),
            "progress": progress,
            "updated_at": to_db_datetime(now),
        }
        if implementation_progress is not None:
            values["implementation_progress"] = implementation_progress
        if status in TERMINAL_SESSION_STATUSES:
            values["completed_at"] = to_db_datetime(now)
        return self._guarded_session_update(
            session_id=session_id,
            values=values,
            event_type=event_type,
            details=details,
        )

    def fail_session(self, session_id: str, *, error: str) -> bool:
        """Move a non-terminal session to failed with a readable reason."""

        now = utc_now()
        return self._guarded_session_update(
            session_id=session_id,
            values={
                "status": SessionStatus.FAILED.value,
                "error": error,
                "completed_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            },
            event_type="error",
            details={"error": sanitize_preview(error)},
        )

    def add_session_event(
        self,
        session_id: str,
        event_type: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_session_event(
                session=session,
                session_id=session_id,
                event_type=event_type,
                details=details or {},
            )
            session.commit()

    def list_session_events(self, session_id: str) -> list[SessionEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CodingSessionEventRow)
                .where(CodingSessionEventRow.session_id == session_id)
                .order_by(
                    col(CodingSessionEventRow.created_at).asc(),
                    col(CodingSessionEventRow.event_id).asc(),
                ),
            ).all()
            return [
                SessionEventView(
                    event_id=row.event_id or 0,
                    session_id=row.session_id,
                    event_type=row.event_type,
                    created_at=to_utc_aware(row.created_at),
                    details=load_json(row.details_json),
                )
                for row in rows
            ]

    # -- QA sessions -----------------------------------------------------------

    def create_qa_session(self, *, project_id: str, coding_session_id: str | None) -> QaSessionView:
        now = utc_now()
        with Session(self.engine) as session:
            row = QaSessionRow(
                qa_session_id=str(uuid4()),
                project_id=project_id,
                coding_session_id=coding_session_id,
                status=QaSessionStatus.RUNNING.value,
                created_at=now,
                started_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_qa_session_view(row)

    def get_qa_session(self, qa_session_id: str) -> QaSessionView | None:
        with Session(self.engine) as session:
            row = session.get(QaSessionRow, qa_session_id)
            return _to_qa_session_view(row) if row is not None else None

    def list_qa_sessions(self, *, coding_session_id: str) -> list[QaSessionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QaSessionRow)
                .where(QaSessionRow.coding_session_id == coding_session_id)
                .order_by(col(QaSessionRow.created_at).desc()),
            ).all()
            return [_to_qa_session_view(row) for row in rows]

    def complete_qa_session(self, qa_session_id: str, *, counts: TestCounts) -> bool:
        now = utc_now()
        return self._guarded_qa_update(
            qa_session_id=qa_session_id,
            values={
                "status": QaSessionStatus.COMPLETED.value,
                "total_tests": counts.total,
                "passed_tests": counts.passed,
                "failed_tests": counts.failed,
                "skipped_tests": counts.skipped,
                "completed_at": to_db_datetime(now),
            },
        )

    def fail_qa_session(self, qa_session_id: str, *, error: str) -> bool:
        now = utc_now()
        return self._guarded_qa_update(
            qa_session_id=qa_session_id,
            values={
                "status": QaSessionStatus.FAILED.value,
                "error": error,
                "completed_at": to_db_datetime(now),
            },
        )

    # -- test suites -----------------------------------------------------------

    def create_test_suites(
        self,
        *,
        project_id: str,
        coding_session_id: str | None,
        unit_id: str | None,
        suites: Iterable[TestSuiteCreate],
    ) -> list[TestSuiteView]:
        now = utc_now()
        rows: list[TestSuiteRow] = []
        with Session(self.engine) as session:
            for suite in suites:
                row = TestSuiteRow(
                    suite_id=str(uuid4()),
                    project_id=project_id,
                    coding_session_id=coding_session_id,
                    unit_id=unit_id,
                    name=suite.name,
                    test_type=suite.test_type.value,
                    status=TestSuiteStatus.READY.value,
                    file_path=suite.file_path,
                    test_code=suite.test_code,
                    created_at=now,
                    generated_at=now,
                )
                session.add(row)
                rows.append(row)
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_suite_view(row) for row in rows]

    def list_test_suites(
        self,
        *,
        coding_session_id: str | None = None,
        status: TestSuiteStatus | None = None,
    ) -> list[TestSuiteView]:
        with Session(self.engine) as session:
            statement = select(TestSuiteRow)
            if coding_session_id is not None:
                statement = statement.where(TestSuiteRow.coding_session_id == coding_session_id)
            if status is not None:
                statement = statement.where(TestSuiteRow.status == status.value)
            rows = session.exec(
                statement.order_by(col(TestSuiteRow.created_at).asc(), col(TestSuiteRow.name)),
            ).all()
            return [_to_suite_view(row) for row in rows]

    def set_suite_status(self, suite_id: str, status: TestSuiteStatus) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(TestSuiteRow)
                .where(col(TestSuiteRow.suite_id) == suite_id)
                .values(status=status.value),
            )
            session.commit()

    def start_test_execution(
        self,
        *,
        suite_id: str,
        qa_session_id: str | None,
    ) -> TestExecutionView:
        """Open a running execution and move its suite to running."""

        now = utc_now()
        with Session(self.engine) as session:
            row = TestExecutionRow(
                execution_id=str(uuid4()),
                suite_id=suite_id,
                qa_session_id=qa_session_id,
                status=TestExecutionStatus.RUNNING.value,
                started_at=now,
            )
            session.add(row)
            session.exec(
                sa_update(TestSuiteRow)
                .where(col(TestSuiteRow.suite_id) == suite_id)
                .values(status=TestSuiteStatus.RUNNING.value),
            )
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def finish_test_execution(
        self,
        execution_id: str,
        *,
        status: TestExecutionStatus,
        counts: TestCounts,
        error: str | None = None,
    ) -> bool:
        """Close a running execution; executions are write-once after this."""

        if status == TestExecutionStatus.RUNNING:
            raise ValueError("Cannot finish a test execution with status running")
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TestExecutionRow)
                .where(
                    col(TestExecutionRow.execution_id) == execution_id,
                    col(TestExecutionRow.status) == TestExecutionStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    total_tests=counts.total,
                    passed_tests=counts.passed,
                    failed_tests=counts.failed,
                    skipped_tests=counts.skipped,
                    error=error,
                    finished_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_test_executions(
        self,
        *,
        suite_id: str | None = None,
        qa_session_id: str | None = None,
        status: TestExecutionStatus | None = None,
    ) -> list[TestExecutionView]:
        """Executions most-recent-first."""

        with Session(self.engine) as session:
            statement = select(TestExecutionRow)
            if suite_id is not None:
                statement = statement.where(TestExecutionRow.suite_id == suite_id)
            if qa_session_id is not None:
                statement = statement.where(TestExecutionRow.qa_session_id == qa_session_id)
            if status is not None:
                statement = statement.where(TestExecutionRow.status == status.value)
            rows = session.exec(
                statement.order_by(
                    col(TestExecutionRow.started_at).desc(),
                    literal_column("test_executions.rowid").desc(),
                ),
            ).all()
            return [_to_execution_view(row) for row in rows]

    # -- internals -------------------------------------------------------------

    def _guarded_session_update(
        self,
        *,
        session_id: str,
        values: dict[str, Any],
        event_type: str | None,
        details: dict[str, Any] | None,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CodingSessionRow)
                .where(
                    col(CodingSessionRow.session_id) == session_id,
                    col(CodingSessionRow.status).not_in(_TERMINAL_SESSION_VALUES),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if event_type is not None:
                self._add_session_event(
                    session=session,
                    session_id=session_id,
                    event_type=event_type,
                    details=details or {},
                )
            session.commit()
            return True

    def _guarded_qa_update(self, *, qa_session_id: str, values: dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QaSessionRow)
                .where(
                    col(QaSessionRow.qa_session_id) == qa_session_id,
                    col(QaSessionRow.status).in_(
                        (QaSessionStatus.PENDING.value, QaSessionStatus.RUNNING.value),
                    ),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _add_job_event(
        self,
        *,
        session: Session,
        job_id: str,
        event_type: JobEventType,
        details: dict[str, Any],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=job_id,
                event_type=event_type.value,
                details_json=dump_json(details),
                created_at=utc_now(),
            ),
        )

    def _add_session_event(
        self,
        *,
        session: Session,
        session_id: str,
        event_type: str,
        details: dict[str, Any],
    ) -> None:
        session.add(
            CodingSessionEventRow(
                session_id=session_id,
                event_type=event_type,
                details_json=dump_json(details),
                created_at=utc_now(),
            ),
        )


def _session_not_paused():
    paused_sessions = select(CodingSessionRow.session_id).where(
        CodingSessionRow.status == SessionStatus.PAUSED.value,
    )
    return or_(
        col(JobRow.coding_session_id).is_(None),
        col(JobRow.coding_session_id).not_in(paused_sessions),
    )


def _keep_paused(status: SessionStatus):
    if status in TERMINAL_SESSION_STATUSES:
        return status.value
    return case(
        (col(CodingSessionRow.status) == SessionStatus.PAUSED.value, SessionStatus.PAUSED.value),
        else_=status.value,
    )


def _to_job_view(row: JobRow) -> JobView:
    return JobView(
        job_id=row.job_id,
        project_id=row.project_id,
        provider=row.provider,
        mode=AgentMode(row.mode),
        phase=JobPhase(row.phase) if row.phase is not None else None,
        coding_session_id=row.coding_session_id,
        qa_session_id=row.qa_session_id,
        args=load_json(row.args_json),
        status=JobStatus(row.status),
        output=row.output,
        error=row.error,
        worker_id=row.worker_id,
        created_at=to_utc_aware(row.created_at),
        started_at=to_utc_aware_optional(row.started_at),
        finished_at=to_utc_aware_optional(row.finished_at),
    )


def _to_job_event_view(row: JobEventRow) -> JobEventView:
    return JobEventView(
        event_id=row.event_id or 0,
        job_id=row.job_id,
        event_type=JobEventType(row.event_type),
        created_at=to_utc_aware(row.created_at),
        details=load_json(row.details_json),
    )


def _to_session_view(row: CodingSessionRow) -> CodingSessionView:
    return CodingSessionView(
        session_id=row.session_id,
        project_id=row.project_id,
        unit_id=row.unit_id,
        programmer_type=row.programmer_type,
        status=SessionStatus(row.status),
        progress=row.progress,
        test_progress=row.test_progress,
        implementation_progress=row.implementation_progress,
        tdd_cycle=json.loads(row.tdd_cycle_json) if row.tdd_cycle_json else None,
        error=row.error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        completed_at=to_utc_aware_optional(row.completed_at),
    )


def _to_qa_session_view(row: QaSessionRow) -> QaSessionView:
    return QaSessionView(
        qa_session_id=row.qa_session_id,
        project_id=row.project_id,
        coding_session_id=row.coding_session_id,
        status=QaSessionStatus(row.status),
        total_tests=row.total_tests,
        passed_tests=row.passed_tests,
        failed_tests=row.failed_tests,
        skipped_tests=row.skipped_tests,
        error=row.error,
        created_at=to_utc_aware(row.created_at),
        started_at=to_utc_aware_optional(row.started_at),
        completed_at=to_utc_aware_optional(row.completed_at),
    )


def _to_suite_view(row: TestSuiteRow) -> TestSuiteView:
    return TestSuiteView(
        suite_id=row.suite_id,
        project_id=row.project_id,
        coding_session_id=row.coding_session_id,
        unit_id=row.unit_id,
        name=row.name,
        test_type=TestType(row.test_type),
        status=TestSuiteStatus(row.status),
        file_path=row.file_path,
        test_code=row.test_code,
        created_at=to_utc_aware(row.created_at),
        generated_at=to_utc_aware_optional(row.generated_at),
    )


def _to_execution_view(row: TestExecutionRow) -> TestExecutionView:
    return TestExecutionView(
        execution_id=row.execution_id,
        suite_id=row.suite_id,
        qa_session_id=row.qa_session_id,
        status=TestExecutionStatus(row.status),
        counts=TestCounts(
            total=row.total_tests,
            passed=row.passed_tests,
            failed=row.failed_tests,
            skipped=row.skipped_tests,
        ),
        error=row.error,
        started_at=to_utc_aware(row.started_at),
        finished_at=to_utc_aware_optional(row.finished_at),
    )
