"""TDD cycle state as an immutable value with pure transitions.

The cycle is persisted as one JSON document on the coding session and is
always written back wholesale, so every transition here returns a new
`TddCycle` instead of mutating the old one.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

DEFAULT_BATCH_SIZE = 3
DEFAULT_STUCK_THRESHOLD = 3

_MIDPOINT_WINDOW = (0.5, 0.6)
_GREEN_PROGRESS_SPAN = 50
_REFACTOR_PROGRESS_BASE = 50
_REFACTOR_PROGRESS_SPAN = 30


class CycleStateError(RuntimeError):
    """Persisted cycle state is missing or cannot be interpreted."""


class CyclePhase(str, Enum):
    GREEN = "green"
    REFACTOR = "refactor"


class CycleTestStatus(str, Enum):
    """Per-test progress; only ever moves pending -> green -> refactored."""

    __test__ = False

    PENDING = "pending"
    GREEN = "green"
    REFACTORED = "refactored"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    CycleTestStatus.PENDING: 0,
    CycleTestStatus.GREEN: 1,
    CycleTestStatus.REFACTORED: 2,
}


@dataclass(frozen=True, slots=True)
class CycleTest:
    """One generated test tracked through the cycle."""

    __test__ = False

    name: str
    code: str
    status: CycleTestStatus = CycleTestStatus.PENDING
    attempts: int = 0

    def promoted(self, status: CycleTestStatus) -> CycleTest:
        if status.rank <= self.status.rank:
            return self
        return replace(self, status=status)


@dataclass(frozen=True, slots=True)
class TddCycle:
    """Batch Green/Refactor cursor over an ordered test list."""

    all_tests: tuple[CycleTest, ...]
    batch_size: int = DEFAULT_BATCH_SIZE
    test_index: int = 0
    phase: CyclePhase = CyclePhase.GREEN
    refactor_count: int = 0
    stuck_count: int = 0
    context_bundle: Any = None

    @classmethod
    def start(
        cls,
        tests: list[dict[str, Any]] | list[CycleTest],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        context_bundle: Any = None,
    ) -> TddCycle:
        """Build a fresh cycle at index 0 in the green phase."""

        if not tests:
            raise CycleStateError("No tests generated for TDD cycle")
        if batch_size <= 0:
            raise CycleStateError(f"Batch size must be positive, got {batch_size}")
        return cls(
            all_tests=tuple(_coerce_test(item, position) for position, item in enumerate(tests)),
            batch_size=batch_size,
            context_bundle=context_bundle,
        )

    @property
    def total_tests(self) -> int:
        return len(self.all_tests)

    @property
    def is_complete(self) -> bool:
        return self.test_index >= self.total_tests

    @property
    def progress_ratio(self) -> float:
        return self.test_index / self.total_tests

    @property
    def tests_passed(self) -> int:
        return sum(1 for test in self.all_tests if test.status is not CycleTestStatus.PENDING)

    def batch_bounds(self) -> tuple[int, int]:
        """Half-open ``[start, end)`` range of the current batch."""

        start = self.test_index
        return start, min(start + self.batch_size, self.total_tests)

    def batch_tests(self) -> tuple[CycleTest, ...]:
        start, end = self.batch_bounds()
        return self.all_tests[start:end]

    def green_progress(self) -> int:
        return math.floor(self.test_index / self.total_tests * _GREEN_PROGRESS_SPAN)

    def refactor_progress(self) -> int:
        return math.floor(
            _REFACTOR_PROGRESS_BASE + self.test_index / self.total_tests * _REFACTOR_PROGRESS_SPAN,
        )

    def should_refactor(self) -> bool:
        """Strategic checkpoint: midpoint window once, completion, or repeated stalls."""

        low, high = _MIDPOINT_WINDOW
        at_midpoint = low <= self.progress_ratio < high and self.refactor_count == 0
        return at_midpoint or self.is_complete or self.stuck_count > 2

    # -- transitions -----------------------------------------------------------

    def with_batch_dispatched(self) -> TddCycle:
        """Count one more attempt for every test of the current batch."""

        start, end = self.batch_bounds()
        tests = list(self.all_tests)
        for position in range(start, end):
            tests[position] = replace(tests[position], attempts=tests[position].attempts + 1)
        return replace(self, all_tests=tuple(tests), phase=CyclePhase.GREEN)

    def with_batch_passed(self) -> TddCycle:
        start, end = self.batch_bounds()
        return replace(
            self,
            all_tests=self._promote_range(start, end, CycleTestStatus.GREEN),
            stuck_count=0,
        )

    def with_batch_stuck(self) -> TddCycle:
        return replace(self, stuck_count=self.stuck_count + 1)

    def is_stuck(self, threshold: int = DEFAULT_STUCK_THRESHOLD) -> bool:
        return self.stuck_count >= threshold

    def advanced(self) -> TddCycle:
        """Move the cursor past the current batch, never beyond the test count."""

        return replace(
            self,
            test_index=min(self.test_index + self.batch_size, self.total_tests),
        )

    def with_refactor_started(self) -> TddCycle:
        return replace(self, phase=CyclePhase.REFACTOR, refactor_count=self.refactor_count + 1)

    def with_refactor_finished(self) -> TddCycle:
        """Mark green tests behind the cursor as refactored and return to green."""

        return replace(
            self,
            all_tests=self._promote_range(
                0,
                self.test_index,
                CycleTestStatus.REFACTORED,
                only_from=CycleTestStatus.GREEN,
            ),
            phase=CyclePhase.GREEN,
            stuck_count=0,
        )

    def _promote_range(
        self,
        start: int,
        end: int,
        status: CycleTestStatus,
        *,
        only_from: CycleTestStatus | None = None,
    ) -> tuple[CycleTest, ...]:
        tests = list(self.all_tests)
        for position in range(start, end):
            if only_from is not None and tests[position].status is not only_from:
                continue
            tests[position] = tests[position].promoted(status)
        return tuple(tests)

    # -- serialization ---------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        start, end = self.batch_bounds()
        return {
            "test_index": self.test_index,
            "phase": self.phase.value,
            "batch_size": self.batch_size,
            "current_batch_tests": [test.name for test in self.all_tests[start:end]],
            "tests_passed": self.tests_passed,
            "total_tests": self.total_tests,
            "all_tests": [
                {
                    "name": test.name,
                    "code": test.code,
                    "status": test.status.value,
                    "attempts": test.attempts,
                }
                for test in self.all_tests
            ],
            "refactor_count": self.refactor_count,
            "stuck_count": self.stuck_count,
            "context_bundle": self.context_bundle,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> TddCycle:
        """Rebuild a cycle from its persisted form; raise `CycleStateError` if corrupt."""

        if not payload:
            raise CycleStateError("No TDD cycle found for session")
        try:
            tests = tuple(
                CycleTest(
                    name=str(item["name"]),
                    code=str(item.get("code", "")),
                    status=CycleTestStatus(item.get("status", CycleTestStatus.PENDING.value)),
                    attempts=int(item.get("attempts", 0)),
                )
                for item in payload["all_tests"]
            )
            cycle = cls(
                all_tests=tests,
                batch_size=int(payload["batch_size"]),
                test_index=int(payload["test_index"]),
                phase=CyclePhase(payload.get("phase", CyclePhase.GREEN.value)),
                refactor_count=int(payload.get("refactor_count", 0)),
                stuck_count=int(payload.get("stuck_count", 0)),
                context_bundle=payload.get("context_bundle"),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise CycleStateError(f"Corrupt TDD cycle state: {error}") from error
        if not tests:
            raise CycleStateError("TDD cycle has an empty test list")
        if cycle.batch_size <= 0 or not 0 <= cycle.test_index <= cycle.total_tests:
            raise CycleStateError(
                f"TDD cycle cursor out of range: index={cycle.test_index} "
                f"total={cycle.total_tests} batch={cycle.batch_size}",
            )
        return cycle


def _coerce_test(item: dict[str, Any] | CycleTest, position: int) -> CycleTest:
    if isinstance(item, CycleTest):
        return item
    name = str(item.get("name") or f"test_{position + 1}")
    return CycleTest(name=name, code=str(item.get("code", "")))
