"""Retry/backoff controller wrapping single agent invocations."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from tdd_conductor.orchestrator.backend import AgentRunError, AgentRunResult
from tdd_conductor.orchestrator.failure_classifier import (
    FailureClassification,
    FailureKind,
    classify_failure,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


@dataclass(slots=True)
class RetryAttempt:
    """One failed attempt that is about to be retried."""

    attempt: int
    delay_seconds: float
    error: str
    classification: FailureClassification


@dataclass(slots=True)
class RetryOutcome:
    """Final result plus the attempt history that produced it."""

    result: AgentRunResult
    attempts: int
    delays: list[float] = field(default_factory=list)
    classification: FailureClassification | None = None


class RetryController:
    """Retry transient agent failures with capped exponential backoff and jitter.

    ``max_attempts`` counts every invocation, the first one included. Delays
    never decrease between consecutive retries even when jitter would pull
    a capped delay below the previous one.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = 10.0,
        max_delay_seconds: float = 120.0,
        jitter_seconds: float = 2.0,
        sleep: Callable[[float], object] = time.sleep,
        should_stop: Callable[[], bool] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_seconds = jitter_seconds
        self._sleep = sleep
        self._should_stop = should_stop
        self._random = rng or random.Random()  # noqa: S311

    def compute_delay(self, attempt: int, *, previous_delay: float = 0.0) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        exponent = max(0, attempt - 1)
        backoff = min(self.max_delay_seconds, self.base_delay_seconds * (2**exponent))
        jitter = self._random.uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return max(previous_delay, backoff + jitter)

    def run(
        self,
        call: Callable[[], AgentRunResult],
        *,
        on_retry: Callable[[RetryAttempt], None] | None = None,
    ) -> RetryOutcome:
        """Invoke ``call`` until it succeeds, fails fatally or attempts run out."""

        delays: list[float] = []
        attempt = 0
        while True:
            attempt += 1
            result, spawn_transient = _invoke(call)
            if result.success:
                return RetryOutcome(result=result, attempts=attempt, delays=delays)

            classification = _classify(result, spawn_transient)
            if not classification.transient:
                return RetryOutcome(
                    result=result,
                    attempts=attempt,
                    delays=delays,
                    classification=classification,
                )
            if attempt >= self.max_attempts:
                logger.warning(
                    "Transient agent failure persisted after %d attempts: %s",
                    attempt,
                    classification.matched_pattern,
                )
                return RetryOutcome(
                    result=result,
                    attempts=attempt,
                    delays=delays,
                    classification=classification,
                )

            delay = self.compute_delay(attempt, previous_delay=delays[-1] if delays else 0.0)
            delays.append(delay)
            logger.warning(
                "Transient agent failure (%s), retry %d/%d in %.1fs",
                classification.kind.value,
                attempt,
                self.max_attempts - 1,
                delay,
            )
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        attempt=attempt,
                        delay_seconds=delay,
                        error=result.error or "",
                        classification=classification,
                    ),
                )
            self._sleep(delay)
            if self._should_stop is not None and self._should_stop():
                return RetryOutcome(
                    result=result,
                    attempts=attempt,
                    delays=delays,
                    classification=classification,
                )


def _invoke(call: Callable[[], AgentRunResult]) -> tuple[AgentRunResult, bool | None]:
    try:
        return call(), None
    except AgentRunError as error:
        return AgentRunResult(success=False, output="", error=str(error)), error.transient


def _classify(result: AgentRunResult, spawn_transient: bool | None) -> FailureClassification:
    classification = classify_failure(result.error, timed_out=result.timed_out)
    if spawn_transient is None or classification.transient == spawn_transient:
        return classification
    # Spawn failures carry an explicit retryability hint that wins over text matching.
    return FailureClassification(
        kind=FailureKind.CONNECTION if spawn_transient else FailureKind.FATAL,
        transient=spawn_transient,
        matched_pattern=classification.matched_pattern,
    )
