"""Controllers for job queue, worker and session CLI commands."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tdd_conductor.config import Settings
from tdd_conductor.orchestrator.backend import CliAgentRunner
from tdd_conductor.orchestrator.dispatcher import Dispatcher
from tdd_conductor.orchestrator.gateway import SessionGateway
from tdd_conductor.orchestrator.models import AgentMode, JobCreate, JobStatus
from tdd_conductor.orchestrator.pipeline import JobPipeline
from tdd_conductor.orchestrator.repository import OrchestratorRepository
from tdd_conductor.orchestrator.retry import RetryController
from tdd_conductor.orchestrator.tdd_cycle import CycleStateError
from tdd_conductor.orchestrator.tdd_engine import TddCycleEngine


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for a standalone job."""

    db_path: Path | None
    project_id: str
    prompt: str
    provider: str | None
    mode: str
    work_dir: str | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    session_id: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    once: bool
    max_polls: int | None
    max_concurrency: int | None = None


@dataclass(slots=True)
class WorkerReclaimCommand:
    db_path: Path | None


@dataclass(slots=True)
class SessionCreateCommand:
    db_path: Path | None
    project_id: str
    unit_id: str | None
    programmer_type: str


@dataclass(slots=True)
class SessionGenerateTestsCommand:
    """CLI input for queuing test generation."""

    db_path: Path | None
    session_id: str
    unit: str | None
    prompt: str | None
    work_dir: str | None
    provider: str | None


@dataclass(slots=True)
class SessionStartTddCommand:
    db_path: Path | None
    session_id: str
    tests_file: Path


@dataclass(slots=True)
class SessionMutateCommand:
    """CLI input for pause/resume/cancel/retry/status."""

    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class SuiteListCommand:
    db_path: Path | None
    session_id: str


class OrchestratorCliController:
    """Coordinates queue, dispatcher and session CLI operations."""

    def enqueue_job(self, command: JobEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.enqueue_job(
                JobCreate(
                    project_id=command.project_id,
                    prompt=command.prompt,
                    provider=command.provider or settings.agent.default_provider,
                    mode=AgentMode(command.mode),
                    work_dir=command.work_dir,
                ),
            )
        return [
            f"Job enqueued: job_id={job.job_id} provider={job.provider} "
            f"mode={job.mode.value} status={job.status.value}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = JobStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status_filter,
                coding_session_id=command.session_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} "
                f"phase={job.phase.value if job.phase else '-'} provider={job.provider} "
                f"session={job.coding_session_id or '-'} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Project: {job.project_id}",
            f"Status: {job.status.value}",
            f"Phase: {job.phase.value if job.phase else '-'}",
            f"Provider: {job.provider} mode={job.mode.value}",
            f"Session: {job.coding_session_id or '-'} qa_session={job.qa_session_id or '-'}",
            f"Worker: {job.worker_id or '-'}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Finished: {job.finished_at.isoformat() if job.finished_at else '-'}",
            f"Error: {job.error or '-'}",
            f"Output chars: {len(job.output or '')}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type.value} "
                f"{json.dumps(event.details, ensure_ascii=False, sort_keys=True)[:200]}",
            )
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.max_concurrency is not None:
            settings.dispatcher.max_concurrency = command.max_concurrency
        settings.validate()
        with (
            _repository(settings) as repository,
            build_dispatcher(settings, repository) as dispatcher,
        ):
            if command.once:
                dispatcher.run_once()
                dispatcher.drain()
            else:
                dispatcher.run_loop(max_polls=command.max_polls)
            summary = dispatcher.summary()

        return [
            "Dispatcher summary: "
            f"polls={summary.polls} dispatched={summary.dispatched} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"reclaimed={summary.reclaimed}",
        ]

    def reclaim(self, command: WorkerReclaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with (
            _repository(settings) as repository,
            build_dispatcher(settings, repository) as dispatcher,
        ):
            reclaimed = dispatcher.reclaim_stuck()
        return [f"Reclaimed stuck jobs: {reclaimed}"]

    def create_session(self, command: SessionCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = _gateway(settings, repository).create_session(
                project_id=command.project_id,
                unit_id=command.unit_id,
                programmer_type=command.programmer_type,
            )
        return [
            f"Session created: session_id={session.session_id} "
            f"programmer_type={session.programmer_type} status={session.status.value}",
        ]

    def generate_tests(self, command: SessionGenerateTestsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = _gateway(settings, repository).start_test_generation(
                command.session_id,
                prompt=command.prompt,
                unit=command.unit,
                work_dir=command.work_dir,
                provider=command.provider,
            )
        return [f"Test generation queued: job_id={job.job_id} session={command.session_id}"]

    def start_tdd(self, command: SessionStartTddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        tests = _read_tests_file(command.tests_file)
        with _repository(settings) as repository:
            cycle = _gateway(settings, repository).initialize_tdd_cycle(command.session_id, tests)
        return [
            f"TDD cycle started: session={command.session_id} "
            f"tests={cycle.total_tests} batch_size={cycle.batch_size}",
        ]

    def pause_session(self, command: SessionMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _gateway(settings, repository).pause(command.session_id)
        return [f"Session paused: {command.session_id}"]

    def resume_session(self, command: SessionMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _gateway(settings, repository).resume(command.session_id)
        return [f"Session resumed: {command.session_id}"]

    def cancel_session(self, command: SessionMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            cancelled = _gateway(settings, repository).cancel(command.session_id)
        if not cancelled:
            return [f"Session already finished: {command.session_id}"]
        return [f"Session cancelled: {command.session_id}"]

    def retry_session(self, command: SessionMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = _gateway(settings, repository).retry(command.session_id)
        if job is None:
            return [f"Session reset: {command.session_id}"]
        return [f"Session retried: {command.session_id} job_id={job.job_id}"]

    def session_status(self, command: SessionMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            projection = _gateway(settings, repository).status(command.session_id)
            events = repository.list_session_events(command.session_id)
        lines = [
            f"Session: {projection.session_id}",
            f"Status: {projection.status.value}",
            f"Progress: {projection.progress}%",
            f"Phase: {projection.current_phase or '-'}",
            f"Tests passed: {projection.tests_passed}/{projection.total_tests}",
            f"Error: {projection.error or '-'}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(f"  {event.created_at.isoformat()} {event.event_type}")
        return lines

    def list_suites(self, command: SuiteListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            suites = repository.list_test_suites(coding_session_id=command.session_id)
            executions = {
                suite.suite_id: repository.list_test_executions(suite_id=suite.suite_id)
                for suite in suites
            }

        lines = [f"Suites: {len(suites)}"]
        for suite in suites:
            lines.append(
                f"  {suite.suite_id} name={suite.name} type={suite.test_type.value} "
                f"status={suite.status.value}",
            )
            for execution in executions[suite.suite_id]:
                counts = execution.counts
                lines.append(
                    f"    run {execution.execution_id} status={execution.status.value} "
                    f"total={counts.total} passed={counts.passed} "
                    f"failed={counts.failed} skipped={counts.skipped}",
                )
        return lines


def build_dispatcher(
    settings: Settings,
    repository: OrchestratorRepository,
    *,
    stop_event: threading.Event | None = None,
) -> Dispatcher:
    """Wire runner, retry, engine and pipeline into a dispatcher."""

    stop_event = stop_event or threading.Event()
    engine = _engine(settings, repository)
    pipeline = JobPipeline(
        repository=repository,
        runner=CliAgentRunner(
            command_templates=settings.agent.command_templates,
            default_provider=settings.agent.default_provider,
        ),
        retry=RetryController(
            max_attempts=settings.retry.max_attempts,
            base_delay_seconds=settings.retry.base_seconds,
            max_delay_seconds=settings.retry.max_seconds,
            jitter_seconds=settings.retry.jitter_seconds,
            sleep=stop_event.wait,
            should_stop=stop_event.is_set,
        ),
        engine=engine,
        job_timeout_seconds=settings.agent.job_timeout_seconds,
        test_generation_pre_delay_seconds=settings.dispatcher.test_generation_pre_delay_seconds,
        graceful_shutdown_seconds=settings.agent.graceful_shutdown_seconds,
        sleep=stop_event.wait,
        should_stop=stop_event.is_set,
    )
    dispatcher_settings = settings.dispatcher
    return Dispatcher(
        store=repository,
        pipeline=pipeline,
        worker_id=dispatcher_settings.worker_id,
        max_concurrency=dispatcher_settings.max_concurrency,
        poll_interval_seconds=dispatcher_settings.poll_interval_seconds,
        capacity_poll_interval_seconds=dispatcher_settings.capacity_poll_interval_seconds,
        dispatch_delay_seconds=dispatcher_settings.dispatch_delay_seconds,
        test_generation_dispatch_delay_seconds=(
            dispatcher_settings.test_generation_dispatch_delay_seconds
        ),
        dispatch_jitter_seconds=dispatcher_settings.dispatch_jitter_seconds,
        stuck_job_timeout_seconds=dispatcher_settings.stuck_job_timeout_seconds,
        untracked_job_timeout_seconds=dispatcher_settings.untracked_job_timeout_seconds,
        stop_event=stop_event,
    )


def _engine(settings: Settings, repository: OrchestratorRepository) -> TddCycleEngine:
    return TddCycleEngine(
        repository,
        batch_size=settings.tdd.batch_size,
        stuck_threshold=settings.tdd.stuck_threshold,
        default_provider=settings.agent.default_provider,
    )


def _gateway(settings: Settings, repository: OrchestratorRepository) -> SessionGateway:
    return SessionGateway(
        repository,
        _engine(settings, repository),
        default_provider=settings.agent.default_provider,
    )


def _read_tests_file(path: Path) -> list[dict[str, Any]]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise CycleStateError(f"Cannot read tests file {path}: {error}") from error
    if isinstance(payload, dict):
        payload = payload.get("tests")
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise CycleStateError(f"Tests file {path} must hold a list of {{name, code}} objects")
    return payload


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
