"""Execution pipeline for one claimed job: run, interpret, complete, cascade."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from tdd_conductor.orchestrator.backend import AgentRunner, AgentRunRequest, AgentRunResult
from tdd_conductor.orchestrator.extractor import ExtractionError
from tdd_conductor.orchestrator.models import (
    AgentMode,
    JobCreate,
    JobEventType,
    JobPhase,
    JobView,
    SessionStatus,
    TestCounts,
    TestExecutionStatus,
    TestSuiteStatus,
)
from tdd_conductor.orchestrator.prompts import build_implementation_prompt, build_qa_prompt
from tdd_conductor.orchestrator.repository import OrchestratorRepository
from tdd_conductor.orchestrator.retry import RetryAttempt, RetryController
from tdd_conductor.orchestrator.sanitization import sanitize_preview
from tdd_conductor.orchestrator.tdd_engine import TddCycleEngine
from tdd_conductor.orchestrator.test_suites import (
    QaReport,
    extract_test_list,
    parse_qa_report,
    parse_test_suites,
)

logger = logging.getLogger(__name__)

SideEffects = Callable[[], None]


@dataclass(slots=True)
class PipelineResult:
    """What happened to one job inside the pipeline."""

    job_id: str
    succeeded: bool
    attempts: int = 0
    error: str | None = None


class JobPipeline:
    """Run a claimed job through retry and agent, then apply its phase outcome.

    Output is interpreted before the job is completed; downstream side effects
    (new jobs, suites, session transitions) only run when the guarded
    ``complete`` actually applied, so a duplicate execution of the same job
    cannot create duplicate follow-up work.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        runner: AgentRunner,
        retry: RetryController,
        engine: TddCycleEngine,
        job_timeout_seconds: float = 600.0,
        test_generation_pre_delay_seconds: float = 8.0,
        graceful_shutdown_seconds: float = 30.0,
        sleep: Callable[[float], object] = time.sleep,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.retry = retry
        self.engine = engine
        self.job_timeout_seconds = job_timeout_seconds
        self.test_generation_pre_delay_seconds = test_generation_pre_delay_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._sleep = sleep
        self._should_stop = should_stop

    def process(self, job: JobView) -> PipelineResult:
        """Execute an already-claimed job to a terminal state."""

        if job.phase == JobPhase.TEST_GENERATION and self.test_generation_pre_delay_seconds > 0:
            self._sleep(self.test_generation_pre_delay_seconds)

        outcome = self.retry.run(
            lambda: self._run_agent(job),
            on_retry=lambda attempt: self._record_retry(job, attempt),
        )
        result = outcome.result
        if not result.success:
            error = result.error or "Agent run failed"
            self.fail_job(job, error=error, output=result.output)
            return PipelineResult(
                job_id=job.job_id,
                succeeded=False,
                attempts=outcome.attempts,
                error=error,
            )

        try:
            side_effects = self._interpret(job, result.output)
        except ExtractionError as error:
            logger.warning("Job %s produced no usable payload: %s", job.job_id, error)
            self.fail_job(job, error=str(error), output=result.output)
            return PipelineResult(
                job_id=job.job_id,
                succeeded=False,
                attempts=outcome.attempts,
                error=str(error),
            )

        if not self.repository.complete(job.job_id, output=result.output):
            logger.info("Job %s was already finalized; skipping follow-up work", job.job_id)
            return PipelineResult(job_id=job.job_id, succeeded=False, attempts=outcome.attempts)

        logger.info(
            "Job %s completed phase=%s attempts=%d",
            job.job_id,
            job.phase.value if job.phase else "-",
            outcome.attempts,
        )
        if side_effects is not None:
            self._apply(job, side_effects)
        return PipelineResult(job_id=job.job_id, succeeded=True, attempts=outcome.attempts)

    def fail_job(self, job: JobView, *, error: str, output: str | None = None) -> bool:
        """Fail the job and cascade the failure to its coding and QA sessions."""

        if not self.repository.fail(job.job_id, error=error, output=output or None):
            return False
        logger.warning("Job %s failed: %s", job.job_id, sanitize_preview(error, max_chars=300))
        if job.coding_session_id:
            self.repository.fail_session(job.coding_session_id, error=error)
        if job.qa_session_id:
            self.repository.fail_qa_session(job.qa_session_id, error=error)
            for execution in self.repository.list_test_executions(
                qa_session_id=job.qa_session_id,
                status=TestExecutionStatus.RUNNING,
            ):
                self.repository.finish_test_execution(
                    execution.execution_id,
                    status=TestExecutionStatus.ERROR,
                    counts=TestCounts(),
                    error=error,
                )
        return True

    # -- execution -------------------------------------------------------------

    def _run_agent(self, job: JobView) -> AgentRunResult:
        return self.runner.run(
            AgentRunRequest(
                mode=job.mode,
                prompt=job.prompt,
                work_dir=Path(job.work_dir) if job.work_dir else None,
                timeout_seconds=self.job_timeout_seconds,
                provider=job.provider,
                on_output=lambda chunk: self._stream(job.job_id, chunk, JobEventType.PROGRESS),
                on_error=lambda chunk: self._stream(job.job_id, chunk, JobEventType.ERROR),
                shutdown_requested=self._should_stop,
                graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            ),
        )

    def _stream(self, job_id: str, chunk: str, event_type: JobEventType) -> None:
        if event_type == JobEventType.PROGRESS:
            self.repository.append_output(job_id, chunk)
        self.repository.append_event(job_id, event_type, {"chunk": chunk})

    def _record_retry(self, job: JobView, attempt: RetryAttempt) -> None:
        self.repository.append_event(
            job.job_id,
            JobEventType.RETRYING,
            {
                "attempt": attempt.attempt,
                "delay_seconds": round(attempt.delay_seconds, 3),
                "error": sanitize_preview(attempt.error),
                **attempt.classification.to_event_details(),
            },
        )

    def _apply(self, job: JobView, side_effects: SideEffects) -> None:
        try:
            side_effects()
        except Exception as error:
            logger.exception("Follow-up work for job %s failed", job.job_id)
            if job.coding_session_id:
                self.repository.fail_session(
                    job.coding_session_id,
                    error=f"Follow-up for job {job.job_id} failed: {error}",
                )

    # -- phase interpretation --------------------------------------------------

    def _interpret(self, job: JobView, output: str) -> SideEffects | None:
        """Parse phase output up front; return the deferred downstream effects."""

        if job.phase == JobPhase.TEST_GENERATION:
            return self._interpret_test_generation(job, output)
        if job.phase == JobPhase.IMPLEMENTATION:
            return lambda: self._after_implementation(job)
        if job.phase == JobPhase.QA:
            report = parse_qa_report(output)
            return lambda: self._after_qa(job, report)
        if job.phase == JobPhase.TDD_GREEN:
            return lambda: self.engine.handle_green_result(job, output)
        if job.phase == JobPhase.TDD_REFACTOR:
            return lambda: self.engine.handle_refactor_result(job, output)
        return None

    def _interpret_test_generation(self, job: JobView, output: str) -> SideEffects | None:
        session_id = job.coding_session_id
        if session_id is None:
            return None
        session = self.repository.get_session(session_id)
        if session is None:
            return None
        suites = parse_test_suites(output, session.programmer_type)
        tests = extract_test_list(output)
        if not suites and not tests:
            raise ExtractionError("No generated tests found in agent output")

        def _effects() -> None:
            self.repository.create_test_suites(
                project_id=job.project_id,
                coding_session_id=session_id,
                unit_id=session.unit_id,
                suites=suites,
            )
            updated = self.repository.update_session_progress(
                session_id,
                status=SessionStatus.TESTS_GENERATED,
                progress=50,
                test_progress=50,
                event_type="tests_generated",
                details={"suites": len(suites), "tests": len(tests or [])},
            )
            if not updated:
                logger.info(
                    "Session %s is terminal; no follow-up for job %s",
                    session_id,
                    job.job_id,
                )
                return
            if tests:
                self.engine.initialize(
                    session_id,
                    tests,
                    context_bundle=job.args.get("context_bundle"),
                )
                return
            self.repository.enqueue_job(
                JobCreate(
                    project_id=job.project_id,
                    prompt=build_implementation_prompt(
                        unit=str(job.args.get("unit") or session.unit_id or ""),
                        programmer_type=session.programmer_type,
                        tests_output=output,
                    ),
                    provider=job.provider,
                    mode=AgentMode.AGENT,
                    phase=JobPhase.IMPLEMENTATION,
                    coding_session_id=session_id,
                    work_dir=job.work_dir,
                ),
            )
            self.repository.update_session_progress(session_id, status=SessionStatus.RUNNING)

        return _effects

    def _after_implementation(self, job: JobView) -> None:
        session_id = job.coding_session_id
        if session_id is None:
            return
        completed = self.repository.update_session_progress(
            session_id,
            status=SessionStatus.COMPLETED,
            progress=100,
            implementation_progress=100,
            event_type="completed",
            details={"job_id": job.job_id},
        )
        if not completed:
            return
        qa_session = self.repository.create_qa_session(
            project_id=job.project_id,
            coding_session_id=session_id,
        )
        suites = self.repository.list_test_suites(
            coding_session_id=session_id,
            status=TestSuiteStatus.READY,
        )
        for suite in suites:
            self.repository.start_test_execution(
                suite_id=suite.suite_id,
                qa_session_id=qa_session.qa_session_id,
            )
        self.repository.enqueue_job(
            JobCreate(
                project_id=job.project_id,
                prompt=build_qa_prompt(suite.name for suite in suites),
                provider=job.provider,
                mode=AgentMode.REVIEW,
                phase=JobPhase.QA,
                qa_session_id=qa_session.qa_session_id,
                work_dir=job.work_dir,
            ),
        )
        logger.info(
            "Session %s implemented; QA session %s started with %d suites",
            session_id,
            qa_session.qa_session_id,
            len(suites),
        )

    def _after_qa(self, job: JobView, report: QaReport) -> None:
        qa_session_id = job.qa_session_id
        if qa_session_id is None:
            return
        qa_session = self.repository.get_qa_session(qa_session_id)
        if qa_session is None:
            return
        suites = {
            suite.suite_id: suite
            for suite in self.repository.list_test_suites(
                coding_session_id=qa_session.coding_session_id,
            )
        }
        for execution in self.repository.list_test_executions(
            qa_session_id=qa_session_id,
            status=TestExecutionStatus.RUNNING,
        ):
            suite = suites.get(execution.suite_id)
            counts = report.counts_for(suite.test_type) if suite is not None else report.summary
            status = _execution_status(counts)
            self.repository.finish_test_execution(
                execution.execution_id,
                status=status,
                counts=counts,
            )
            self.repository.set_suite_status(execution.suite_id, _suite_status(status))
        self.repository.complete_qa_session(qa_session_id, counts=report.summary)
        logger.info(
            "QA session %s completed total=%d passed=%d failed=%d",
            qa_session_id,
            report.summary.total,
            report.summary.passed,
            report.summary.failed,
        )


def _execution_status(counts: TestCounts) -> TestExecutionStatus:
    if counts.failed > 0:
        return TestExecutionStatus.FAILED
    if counts.total == 0 or counts.skipped == counts.total:
        return TestExecutionStatus.SKIPPED
    return TestExecutionStatus.PASSED


def _suite_status(status: TestExecutionStatus) -> TestSuiteStatus:
    if status == TestExecutionStatus.FAILED:
        return TestSuiteStatus.FAILED
    if status == TestExecutionStatus.SKIPPED:
        return TestSuiteStatus.SKIPPED
    return TestSuiteStatus.PASSED
