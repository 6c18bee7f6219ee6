from __future__ import annotations

import random

import allure
import pytest

from tdd_conductor.orchestrator.backend import AgentRunError, AgentRunResult
from tdd_conductor.orchestrator.failure_classifier import FailureKind
from tdd_conductor.orchestrator.retry import RetryAttempt, RetryController

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Retry Policy"),
]

_TRANSIENT = AgentRunResult(success=False, output="", error="resource_exhausted: slow down")
_FATAL = AgentRunResult(success=False, output="", error="SyntaxError in generated code")
_OK = AgentRunResult(success=True, output="done", exit_code=0)


class _Script:
    def __init__(self, *results: AgentRunResult | Exception) -> None:
        self.results = list(results)
        self.calls = 0

    def __call__(self) -> AgentRunResult:
        self.calls += 1
        item = self.results.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _controller(sleeps: list[float], **kwargs) -> RetryController:
    return RetryController(
        max_attempts=kwargs.pop("max_attempts", 5),
        base_delay_seconds=kwargs.pop("base_delay_seconds", 10),
        max_delay_seconds=kwargs.pop("max_delay_seconds", 120),
        jitter_seconds=kwargs.pop("jitter_seconds", 2),
        sleep=sleeps.append,
        rng=random.Random(7),
        **kwargs,
    )


@pytest.mark.parametrize("succeed_on", [1, 2, 3, 5])
def test_transient_failures_retry_until_success(succeed_on: int) -> None:
    sleeps: list[float] = []
    script = _Script(*([_TRANSIENT] * (succeed_on - 1)), _OK)
    attempts: list[RetryAttempt] = []

    outcome = _controller(sleeps).run(script, on_retry=attempts.append)

    assert outcome.result.success is True
    assert outcome.attempts == succeed_on
    assert script.calls == succeed_on
    assert len(sleeps) == succeed_on - 1
    assert [attempt.attempt for attempt in attempts] == list(range(1, succeed_on))
    assert all(
        attempt.classification.kind == FailureKind.RESOURCE_EXHAUSTED for attempt in attempts
    )


def test_retry_stops_at_attempt_ceiling() -> None:
    sleeps: list[float] = []
    script = _Script(*([_TRANSIENT] * 5))

    outcome = _controller(sleeps).run(script)

    assert outcome.result.success is False
    assert outcome.attempts == 5
    assert script.calls == 5
    assert len(sleeps) == 4
    assert outcome.classification is not None
    assert outcome.classification.transient is True


def test_retry_delays_never_decrease_and_respect_cap() -> None:
    sleeps: list[float] = []
    script = _Script(*([_TRANSIENT] * 8))

    outcome = _controller(
        sleeps,
        max_attempts=8,
        base_delay_seconds=10,
        max_delay_seconds=40,
        jitter_seconds=5,
    ).run(script)

    assert outcome.delays == sleeps
    assert sleeps == sorted(sleeps)
    assert sleeps[0] >= 10
    assert all(delay <= 45 for delay in sleeps)


def test_fatal_failure_is_not_retried() -> None:
    sleeps: list[float] = []
    script = _Script(_FATAL, _OK)

    outcome = _controller(sleeps).run(script)

    assert outcome.result.success is False
    assert outcome.attempts == 1
    assert script.calls == 1
    assert sleeps == []
    assert outcome.classification is not None
    assert outcome.classification.kind == FailureKind.FATAL


def test_timeout_is_not_retried() -> None:
    sleeps: list[float] = []
    timed_out = AgentRunResult(
        success=False,
        output="",
        error="Command timeout after 1s",
        timed_out=True,
    )

    outcome = _controller(sleeps).run(_Script(timed_out, _OK))

    assert outcome.attempts == 1
    assert sleeps == []


def test_spawn_errors_follow_their_transient_flag() -> None:
    sleeps: list[float] = []
    script = _Script(AgentRunError("Agent failed to start: EAGAIN", transient=True), _OK)

    outcome = _controller(sleeps).run(script)

    assert outcome.result.success is True
    assert outcome.attempts == 2

    fatal = _Script(AgentRunError("Agent command not found: agent", transient=False), _OK)
    outcome = _controller([]).run(fatal)

    assert outcome.result.success is False
    assert outcome.result.error == "Agent command not found: agent"
    assert fatal.calls == 1


def test_stop_request_ends_retrying_after_current_wait() -> None:
    sleeps: list[float] = []
    script = _Script(*([_TRANSIENT] * 5))

    outcome = _controller(sleeps, should_stop=lambda: True).run(script)

    assert outcome.attempts == 1
    assert len(sleeps) == 1
    assert outcome.result.success is False


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryController(max_attempts=0)
