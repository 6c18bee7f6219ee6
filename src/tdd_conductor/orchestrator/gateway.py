"""Session lifecycle facade used by the surrounding CRUD layer."""

from __future__ import annotations

import logging
from typing import Any

from tdd_conductor.orchestrator.models import (
    ACTIVE_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    AgentMode,
    CodingSessionView,
    JobCreate,
    JobPhase,
    JobView,
    SessionStatus,
    SessionStatusProjection,
)
from tdd_conductor.orchestrator.prompts import build_test_generation_prompt
from tdd_conductor.orchestrator.repository import OrchestratorRepository
from tdd_conductor.orchestrator.tdd_cycle import CycleStateError, TddCycle
from tdd_conductor.orchestrator.tdd_engine import TddCycleEngine

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"

_PAUSABLE = frozenset(ACTIVE_SESSION_STATUSES | {SessionStatus.PENDING})
_CANCELLABLE = _PAUSABLE | {SessionStatus.PAUSED}


class SessionStateError(RuntimeError):
    """Requested lifecycle change is not valid for the session's current state."""


class SessionGateway:
    """Create, steer and observe coding sessions.

    Pause and cancel never interrupt a running agent call: pausing makes the
    session's pending jobs ineligible for claiming, cancelling fails them and
    turns any later write from an in-flight job into a no-op.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        engine: TddCycleEngine,
        *,
        default_provider: str = "cursor",
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.default_provider = default_provider

    def create_session(
        self,
        *,
        project_id: str,
        unit_id: str | None = None,
        programmer_type: str = "fullstack",
    ) -> CodingSessionView:
        session = self.repository.create_session(
            project_id=project_id,
            unit_id=unit_id,
            programmer_type=programmer_type,
        )
        logger.info("Created coding session %s project=%s", session.session_id, project_id)
        return session

    def start_test_generation(  # noqa: PLR0913
        self,
        session_id: str,
        *,
        prompt: str | None = None,
        unit: str | None = None,
        work_dir: str | None = None,
        provider: str | None = None,
        context_bundle: Any = None,
    ) -> JobView:
        """Queue the test-generation job and move the session to generating_tests."""

        session = self._require(session_id)
        if session.status != SessionStatus.PENDING:
            raise SessionStateError(
                f"Cannot generate tests for session in status {session.status.value}",
            )
        unit_text = unit or session.unit_id or ""
        args: dict[str, Any] = {"unit": unit_text}
        if context_bundle is not None:
            args["context_bundle"] = context_bundle
        if not self.repository.transition_session(
            session_id,
            from_statuses=[SessionStatus.PENDING],
            to_status=SessionStatus.GENERATING_TESTS,
        ):
            raise SessionStateError(f"Session {session_id} changed state concurrently")
        return self.repository.enqueue_job(
            JobCreate(
                project_id=session.project_id,
                prompt=prompt
                or build_test_generation_prompt(
                    unit=unit_text,
                    programmer_type=session.programmer_type,
                ),
                provider=provider or self.default_provider,
                mode=AgentMode.AGENT,
                phase=JobPhase.TEST_GENERATION,
                coding_session_id=session_id,
                work_dir=work_dir,
                args=args,
            ),
        )

    def initialize_tdd_cycle(
        self,
        session_id: str,
        tests: list[dict[str, Any]],
        *,
        context_bundle: Any = None,
    ) -> TddCycle:
        """Start a TDD cycle over ``tests``; an empty list is rejected."""

        if not tests:
            raise CycleStateError("No tests generated for TDD cycle")
        session = self._require(session_id)
        if session.status in TERMINAL_SESSION_STATUSES:
            raise SessionStateError(f"Session {session_id} is already {session.status.value}")
        return self.engine.initialize(session_id, tests, context_bundle=context_bundle)

    def pause(self, session_id: str) -> None:
        session = self._require(session_id)
        if session.status not in _PAUSABLE:
            raise SessionStateError(f"Cannot pause session in status {session.status.value}")
        applied = self.repository.transition_session(
            session_id,
            from_statuses=_PAUSABLE,
            to_status=SessionStatus.PAUSED,
            event_type="paused",
            details={"previous_status": session.status.value},
        )
        if not applied:
            raise SessionStateError(f"Session {session_id} changed state concurrently")
        logger.info("Paused session %s", session_id)

    def resume(self, session_id: str) -> None:
        """Make a paused session's pending jobs eligible again."""

        session = self._require(session_id)
        if session.status != SessionStatus.PAUSED:
            raise SessionStateError(f"Cannot resume session in status {session.status.value}")
        applied = self.repository.transition_session(
            session_id,
            from_statuses=[SessionStatus.PAUSED],
            to_status=self._status_before_pause(session),
            event_type="resumed",
        )
        if not applied:
            raise SessionStateError(f"Session {session_id} changed state concurrently")
        logger.info("Resumed session %s", session_id)

    def cancel(self, session_id: str) -> bool:
        """Fail the session and its queued jobs; a terminal session is left alone."""

        session = self._require(session_id)
        if session.status in TERMINAL_SESSION_STATUSES:
            return False
        applied = self.repository.transition_session(
            session_id,
            from_statuses=_CANCELLABLE,
            to_status=SessionStatus.FAILED,
            error=CANCELLED_BY_USER,
            event_type="cancelled",
        )
        if applied:
            dropped = self.repository.fail_pending_jobs_for_session(
                session_id,
                error=CANCELLED_BY_USER,
            )
            logger.info("Cancelled session %s, dropped %d pending job(s)", session_id, dropped)
        return applied

    def retry(self, session_id: str) -> JobView | None:
        """Restart a failed session from its persisted TDD position, or from scratch."""

        session = self._require(session_id)
        if session.status != SessionStatus.FAILED:
            raise SessionStateError(f"Cannot retry session in status {session.status.value}")
        if session.tdd_cycle:
            cycle = TddCycle.from_dict(session.tdd_cycle)
            self.repository.transition_session(
                session_id,
                from_statuses=[SessionStatus.FAILED],
                to_status=SessionStatus.TDD_GREEN,
                clear_error=True,
                event_type="retried",
                details={"test_index": cycle.test_index},
            )
            return self.engine.resume(session_id)
        self.repository.transition_session(
            session_id,
            from_statuses=[SessionStatus.FAILED],
            to_status=SessionStatus.PENDING,
            clear_error=True,
            event_type="retried",
        )
        return None

    def status(self, session_id: str) -> SessionStatusProjection:
        session = self._require(session_id)
        return project_status(session)

    def _status_before_pause(self, session: CodingSessionView) -> SessionStatus:
        # The cycle keeps moving while paused, so its phase beats the recorded status.
        if session.tdd_cycle:
            phase = session.tdd_cycle.get("phase")
            return SessionStatus.TDD_REFACTOR if phase == "refactor" else SessionStatus.TDD_GREEN
        for event in reversed(self.repository.list_session_events(session.session_id)):
            if event.event_type != "paused":
                continue
            previous = event.details.get("previous_status")
            if previous in {status.value for status in _PAUSABLE}:
                return SessionStatus(previous)
            break
        return SessionStatus.PENDING

    def _require(self, session_id: str) -> CodingSessionView:
        session = self.repository.get_session(session_id)
        if session is None:
            raise SessionStateError(f"Coding session not found: {session_id}")
        return session


def project_status(session: CodingSessionView) -> SessionStatusProjection:
    """Read-only status view derived from the session row and its cycle."""

    tests_passed = 0
    total_tests = 0
    current_phase: str | None = None
    if session.tdd_cycle:
        try:
            cycle = TddCycle.from_dict(session.tdd_cycle)
        except CycleStateError:
            logger.warning("Session %s carries an unreadable TDD cycle", session.session_id)
        else:
            tests_passed = cycle.tests_passed
            total_tests = cycle.total_tests
            current_phase = cycle.phase.value
    if current_phase is None and session.status in ACTIVE_SESSION_STATUSES:
        current_phase = session.status.value
    return SessionStatusProjection(
        session_id=session.session_id,
        status=session.status,
        progress=session.progress,
        current_phase=current_phase,
        tests_passed=tests_passed,
        total_tests=total_tests,
        error=session.error,
    )
