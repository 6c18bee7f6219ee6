"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
import threading
from collections.abc import Callable, Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from tdd_conductor.orchestrator.backend import AgentRunRequest, AgentRunResult
from tdd_conductor.orchestrator.models import JobStatus
from tdd_conductor.orchestrator.pipeline import JobPipeline
from tdd_conductor.orchestrator.repository import OrchestratorRepository
from tdd_conductor.orchestrator.retry import RetryController
from tdd_conductor.orchestrator.tdd_engine import TddCycleEngine
from tdd_conductor.storage.common import to_db_datetime, utc_now
from tdd_conductor.storage.sqlmodel_models import JobRow

_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m tdd_conductor.orchestrator.backend.echo_agent "
    "--prompt {prompt}"
)

Reply = AgentRunResult | str
Handler = Callable[[AgentRunRequest], Reply]


class ScriptedRunner:
    """Agent runner double answering each request through a handler.

    A plain string reply is a successful run with that output.
    """

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[AgentRunRequest] = []
        self._lock = threading.Lock()

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        with self._lock:
            self.requests.append(request)
        reply = self.handler(request)
        if isinstance(reply, AgentRunResult):
            return reply
        if request.on_output is not None:
            request.on_output(reply)
        return AgentRunResult(success=True, output=reply, exit_code=0)


def no_sleep(_: float) -> None:
    return None


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "orchestrator.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def engine(repository: OrchestratorRepository) -> TddCycleEngine:
    return TddCycleEngine(repository, batch_size=3, stuck_threshold=3, default_provider="echo")


@pytest.fixture()
def make_pipeline(
    repository: OrchestratorRepository,
    engine: TddCycleEngine,
) -> Callable[[Handler], tuple[JobPipeline, ScriptedRunner]]:
    """Factory for a pipeline over a scripted runner with zero delays."""

    def _build(handler: Handler, *, max_attempts: int = 5) -> tuple[JobPipeline, ScriptedRunner]:
        runner = ScriptedRunner(handler)
        pipeline = JobPipeline(
            repository=repository,
            runner=runner,
            retry=RetryController(
                max_attempts=max_attempts,
                base_delay_seconds=0,
                max_delay_seconds=0,
                jitter_seconds=0,
                sleep=no_sleep,
            ),
            engine=engine,
            test_generation_pre_delay_seconds=0,
            sleep=no_sleep,
        )
        return pipeline, runner

    return _build


@pytest.fixture()
def run_queue(repository: OrchestratorRepository) -> Callable[..., int]:
    """Claim and process pending jobs one by one until the queue is empty."""

    def _run(pipeline: JobPipeline, *, limit: int = 100) -> int:
        processed = 0
        while processed < limit:
            pending = repository.find_pending(limit=1)
            if not pending:
                return processed
            job = pending[0]
            assert repository.claim(job.job_id, worker_id="test-worker")
            claimed = repository.get_job(job.job_id)
            assert claimed is not None and claimed.status == JobStatus.RUNNING
            pipeline.process(claimed)
            processed += 1
        raise AssertionError(f"Queue did not drain after {limit} jobs")

    return _run


@pytest.fixture()
def echo_agent_command() -> str:
    """Command template running the bundled echo agent."""
    return _ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def backdate_start(repository: OrchestratorRepository) -> Callable[[str, int], None]:
    """Pretend a running job was claimed ``seconds`` ago."""

    def _backdate(job_id: str, seconds: int) -> None:
        with Session(repository.engine) as session:
            session.exec(
                sa_update(JobRow)
                .where(col(JobRow.job_id) == job_id)
                .values(started_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
            )
            session.commit()

    return _backdate
