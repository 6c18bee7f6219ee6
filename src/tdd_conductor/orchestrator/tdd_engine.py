"""Batch Green -> Refactor -> next batch state machine for coding sessions."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from tdd_conductor.orchestrator.extractor import OutputExtractor, PayloadShape
from tdd_conductor.orchestrator.models import (
    AgentMode,
    CodingSessionView,
    JobCreate,
    JobPhase,
    JobView,
    SessionStatus,
)
from tdd_conductor.orchestrator.prompts import build_green_prompt, build_refactor_prompt
from tdd_conductor.orchestrator.repository import OrchestratorRepository
from tdd_conductor.orchestrator.tdd_cycle import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_STUCK_THRESHOLD,
    CyclePhase,
    CycleStateError,
    TddCycle,
)

logger = logging.getLogger(__name__)

_PLAIN_PASS_SIGNAL = re.compile(
    r"(?<!not )\ball (?:the )?tests (?:now )?pass(?:ed|ing)?\b",
    re.IGNORECASE,
)


def output_signals_pass(output: str) -> bool:
    """True when the agent reports that every test of the batch passes.

    The last payload carrying an ``all_tests_passed`` flag decides, so edited
    config files shown before the result block do not count. Plain text is
    only consulted when no payload carries the flag.
    """

    verdicts = [
        found.value["all_tests_passed"]
        for found in OutputExtractor(PayloadShape.OBJECT).find_all(output)
        if "all_tests_passed" in found.value
    ]
    if verdicts:
        return verdicts[-1] is True
    return _PLAIN_PASS_SIGNAL.search(output or "") is not None


class TddCycleEngine:
    """Drive one coding session through batched TDD phases.

    Each phase is a queued agent job. The engine is re-entered from the job
    pipeline when a `tdd_green` or `tdd_refactor` job completes, so batches
    of one session are strictly sequential. Cycle state is loaded, passed
    through a pure transition and written back wholesale.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        stuck_threshold: int = DEFAULT_STUCK_THRESHOLD,
        default_provider: str = "cursor",
    ) -> None:
        self.repository = repository
        self.batch_size = batch_size
        self.stuck_threshold = stuck_threshold
        self.default_provider = default_provider
        self._local = threading.local()

    def initialize(
        self,
        session_id: str,
        tests: list[dict[str, Any]],
        *,
        context_bundle: Any = None,
    ) -> TddCycle:
        """Start a fresh cycle for the session and enqueue the first green batch."""

        cycle = TddCycle.start(tests, batch_size=self.batch_size, context_bundle=context_bundle)
        with self._fatal_for_session(session_id):
            self._require_session(session_id)
            logger.info(
                "Initializing TDD cycle session=%s tests=%d batch_size=%d",
                session_id,
                cycle.total_tests,
                cycle.batch_size,
            )
            self._save(
                session_id,
                cycle,
                status=SessionStatus.TDD_GREEN,
                progress=0,
                event_type="tdd_started",
                details={"total_tests": cycle.total_tests, "batch_size": cycle.batch_size},
            )
            self.execute_batch_green(session_id, cycle)
        return cycle

    def execute_batch_green(self, session_id: str, cycle: TddCycle) -> JobView | None:
        """Enqueue one job asking the agent to make the current batch pass."""

        with self._fatal_for_session(session_id):
            cycle = cycle.with_batch_dispatched()
            start, end = cycle.batch_bounds()
            progress = cycle.green_progress()
            saved = self._save(
                session_id,
                cycle,
                status=SessionStatus.TDD_GREEN,
                progress=progress,
                implementation_progress=progress,
            )
            if not saved:
                logger.info("Session %s is terminal; green batch not dispatched", session_id)
                return None
            job = self._enqueue(
                session_id,
                phase=JobPhase.TDD_GREEN,
                prompt=build_green_prompt(cycle),
                args={"batch_start": start, "batch_size": end - start, "tdd_mode": "strict"},
            )
            logger.info(
                "TDD green batch tests %d-%d/%d session=%s job=%s",
                start + 1,
                end,
                cycle.total_tests,
                session_id,
                job.job_id,
            )
            return job

    def handle_green_result(self, job: JobView, output: str) -> None:
        """Advance, retry or force-skip the batch a completed green job covered."""

        session_id = _session_of(job)
        with self._fatal_for_session(session_id):
            cycle = self._load(session_id)
            if cycle is None:
                return
            stale = (
                cycle.phase is not CyclePhase.GREEN
                or job.args.get("batch_start") != cycle.test_index
            )
            if stale:
                logger.info("Ignoring stale green result job=%s session=%s", job.job_id, session_id)
                return

            start, end = cycle.batch_bounds()
            if output_signals_pass(output):
                cycle = cycle.with_batch_passed()
                self.repository.add_session_event(
                    session_id,
                    "batch_completed",
                    {"batch_start": start, "batch_end": end, "job_id": job.job_id},
                )
                self.advance_to_next_batch(session_id, cycle)
                return

            cycle = cycle.with_batch_stuck()
            if not cycle.is_stuck(self.stuck_threshold):
                logger.info(
                    "TDD batch %d-%d not green yet (stuck %d/%d), retrying session=%s",
                    start + 1,
                    end,
                    cycle.stuck_count,
                    self.stuck_threshold,
                    session_id,
                )
                self.execute_batch_green(session_id, cycle)
                return

            logger.warning(
                "TDD batch %d-%d stuck after %d attempts, skipping ahead session=%s",
                start + 1,
                end,
                cycle.stuck_count,
                session_id,
            )
            self.repository.add_session_event(
                session_id,
                "batch_skipped",
                {"batch_start": start, "batch_end": end, "stuck_count": cycle.stuck_count},
            )
            self.advance_to_next_batch(session_id, cycle)

    def should_refactor(self, cycle: TddCycle) -> bool:
        return cycle.should_refactor()

    def advance_to_next_batch(self, session_id: str, cycle: TddCycle) -> None:
        """Move past the current batch, then refactor, finish or start the next batch."""

        with self._fatal_for_session(session_id):
            cycle = cycle.advanced()
            logger.info(
                "TDD progress %d/%d tests session=%s",
                cycle.test_index,
                cycle.total_tests,
                session_id,
            )
            if self.should_refactor(cycle):
                logger.info(
                    "Strategic refactor at %d%% session=%s",
                    int(cycle.progress_ratio * 100),
                    session_id,
                )
                self.execute_refactor(session_id, cycle)
                return
            if cycle.is_complete:
                self._complete(session_id, cycle)
                return
            self.execute_batch_green(session_id, cycle)

    def execute_refactor(self, session_id: str, cycle: TddCycle) -> JobView | None:
        """Enqueue a behavior-preserving cleanup job at a checkpoint."""

        with self._fatal_for_session(session_id):
            return self._dispatch_refactor(session_id, cycle.with_refactor_started())

    def _dispatch_refactor(self, session_id: str, cycle: TddCycle) -> JobView | None:
        with self._fatal_for_session(session_id):
            saved = self._save(
                session_id,
                cycle,
                status=SessionStatus.TDD_REFACTOR,
                progress=cycle.refactor_progress(),
            )
            if not saved:
                return None
            job = self._enqueue(
                session_id,
                phase=JobPhase.TDD_REFACTOR,
                prompt=build_refactor_prompt(cycle),
                args={"test_index": cycle.test_index, "refactor_count": cycle.refactor_count},
            )
            logger.info(
                "TDD refactor #%d after %d/%d tests session=%s job=%s",
                cycle.refactor_count,
                cycle.test_index,
                cycle.total_tests,
                session_id,
                job.job_id,
            )
            return job

    def handle_refactor_result(self, job: JobView, output: str) -> None:  # noqa: ARG002
        """Mark finished tests refactored and resume batching (or complete)."""

        session_id = _session_of(job)
        with self._fatal_for_session(session_id):
            cycle = self._load(session_id)
            if cycle is None:
                return
            if (
                cycle.phase is not CyclePhase.REFACTOR
                or job.args.get("refactor_count") != cycle.refactor_count
            ):
                logger.info(
                    "Ignoring stale refactor result job=%s session=%s",
                    job.job_id,
                    session_id,
                )
                return
            cycle = cycle.with_refactor_finished()
            self.repository.add_session_event(
                session_id,
                "refactored",
                {"refactor_count": cycle.refactor_count, "test_index": cycle.test_index},
            )
            if cycle.is_complete:
                self._complete(session_id, cycle)
                return
            self.execute_batch_green(session_id, cycle)

    def resume(self, session_id: str) -> JobView | None:
        """Re-dispatch the phase the persisted cycle is in (used by session retry)."""

        with self._fatal_for_session(session_id):
            cycle = self._load(session_id)
            if cycle is None:
                raise CycleStateError("No TDD cycle found for session")
            if cycle.phase is CyclePhase.REFACTOR:
                # Same checkpoint again, not a new one.
                return self._dispatch_refactor(session_id, cycle)
            if cycle.is_complete:
                self._complete(session_id, cycle)
                return None
            return self.execute_batch_green(session_id, cycle)

    # -- internals -------------------------------------------------------------

    def _complete(self, session_id: str, cycle: TddCycle) -> None:
        logger.info("All %d tests completed session=%s", cycle.total_tests, session_id)
        self._save(
            session_id,
            cycle,
            status=SessionStatus.COMPLETED,
            progress=100,
            implementation_progress=100,
            event_type="completed",
            details={"tests_passed": cycle.tests_passed, "refactor_count": cycle.refactor_count},
        )

    def _load(self, session_id: str) -> TddCycle | None:
        session = self._require_session(session_id)
        if session.status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            logger.info("Session %s already %s; cycle untouched", session_id, session.status.value)
            return None
        return TddCycle.from_dict(session.tdd_cycle)

    def _require_session(self, session_id: str) -> CodingSessionView:
        session = self.repository.get_session(session_id)
        if session is None:
            raise CycleStateError(f"Coding session not found: {session_id}")
        return session

    def _save(  # noqa: PLR0913
        self,
        session_id: str,
        cycle: TddCycle,
        *,
        status: SessionStatus,
        progress: int,
        implementation_progress: int | None = None,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        return self.repository.replace_tdd_cycle(
            session_id,
            cycle=cycle.to_dict(),
            status=status,
            progress=progress,
            implementation_progress=implementation_progress,
            event_type=event_type,
            details=details,
        )

    def _enqueue(
        self,
        session_id: str,
        *,
        phase: JobPhase,
        prompt: str,
        args: dict[str, Any],
    ) -> JobView:
        session = self._require_session(session_id)
        provider, work_dir = self._job_defaults(session_id)
        return self.repository.enqueue_job(
            JobCreate(
                project_id=session.project_id,
                prompt=prompt,
                provider=provider,
                mode=AgentMode.AGENT,
                phase=phase,
                coding_session_id=session_id,
                work_dir=work_dir,
                args=args,
            ),
        )

    def _job_defaults(self, session_id: str) -> tuple[str, str | None]:
        # Phase jobs inherit provider and work dir from the session's latest job.
        latest = self.repository.list_jobs(coding_session_id=session_id, limit=1)
        if not latest:
            return self.default_provider, None
        return latest[0].provider, latest[0].work_dir

    @contextmanager
    def _fatal_for_session(self, session_id: str) -> Iterator[None]:
        # Entry points nest; only the outermost one fails the session.
        depth = getattr(self._local, "depth", 0)
        self._local.depth = depth + 1
        try:
            yield
        except (CycleStateError, SQLAlchemyError) as error:
            if depth == 0:
                logger.exception("TDD cycle failure session=%s", session_id)
                try:
                    self.repository.fail_session(session_id, error=f"TDD cycle error: {error}")
                except SQLAlchemyError:
                    logger.exception("Could not mark session %s failed", session_id)
            raise
        finally:
            self._local.depth = depth


def _session_of(job: JobView) -> str:
    session_id = job.coding_session_id or job.args.get("coding_session_id")
    if not session_id:
        raise CycleStateError(f"Job {job.job_id} is not linked to a coding session")
    return str(session_id)
