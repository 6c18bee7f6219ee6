"""Domain models for the agent job queue, coding sessions and test suites."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states; transitions only move forward."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobEventType(str, Enum):
    """Append-only job event kinds."""

    STARTED = "started"
    PROGRESS = "progress"
    ERROR = "error"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPhase(str, Enum):
    """Role of a job within a coding-session workflow."""

    TEST_GENERATION = "test_generation"
    IMPLEMENTATION = "implementation"
    TDD_GREEN = "tdd_green"
    TDD_REFACTOR = "tdd_refactor"
    QA = "qa"


class AgentMode(str, Enum):
    PLAN = "plan"
    PATCH = "patch"
    REVIEW = "review"
    AGENT = "agent"


class SessionStatus(str, Enum):
    """Coding session lifecycle states."""

    PENDING = "pending"
    GENERATING_TESTS = "generating_tests"
    TESTS_GENERATED = "tests_generated"
    TDD_GREEN = "tdd_green"
    TDD_REFACTOR = "tdd_refactor"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})
ACTIVE_SESSION_STATUSES = frozenset(
    {
        SessionStatus.GENERATING_TESTS,
        SessionStatus.TESTS_GENERATED,
        SessionStatus.TDD_GREEN,
        SessionStatus.TDD_REFACTOR,
        SessionStatus.RUNNING,
    },
)


class QaSessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TestType(str, Enum):
    __test__ = False

    UNIT = "unit"
    INTEGRATION = "integration"
    E2E = "e2e"


class TestSuiteStatus(str, Enum):
    __test__ = False

    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TestExecutionStatus(str, Enum):
    __test__ = False

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing an agent job."""

    project_id: str
    prompt: str
    provider: str = "cursor"
    mode: AgentMode = AgentMode.AGENT
    phase: JobPhase | None = None
    coding_session_id: str | None = None
    qa_session_id: str | None = None
    work_dir: str | None = None
    args: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None

    def build_args(self) -> dict[str, Any]:
        """Merge linkage keys into the opaque args bag."""

        merged = dict(self.args)
        merged["mode"] = self.mode.value
        merged["prompt"] = self.prompt
        if self.phase is not None:
            merged["phase"] = self.phase.value
        if self.work_dir is not None:
            merged["work_dir"] = self.work_dir
        if self.coding_session_id is not None:
            merged["coding_session_id"] = self.coding_session_id
        if self.qa_session_id is not None:
            merged["qa_session_id"] = self.qa_session_id
        return merged


@dataclass(slots=True)
class JobView:
    """Readable job view for dispatcher, engine and CLI."""

    job_id: str
    project_id: str
    provider: str
    mode: AgentMode
    phase: JobPhase | None
    coding_session_id: str | None
    qa_session_id: str | None
    args: dict[str, Any]
    status: JobStatus
    output: str | None
    error: str | None
    worker_id: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def prompt(self) -> str:
        return str(self.args.get("prompt", ""))

    @property
    def work_dir(self) -> str | None:
        value = self.args.get("work_dir")
        return str(value) if value else None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for the audit trail."""

    event_id: int
    job_id: str
    event_type: JobEventType
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class CodingSessionView:
    session_id: str
    project_id: str
    unit_id: str | None
    programmer_type: str
    status: SessionStatus
    progress: int
    test_progress: int
    implementation_progress: int
    tdd_cycle: dict[str, Any] | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class SessionEventView:
    event_id: int
    session_id: str
    event_type: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SessionStatusProjection:
    """Read-only status summary exposed to the CRUD layer."""

    session_id: str
    status: SessionStatus
    progress: int
    current_phase: str | None
    tests_passed: int
    total_tests: int
    error: str | None = None


@dataclass(slots=True)
class QaSessionView:
    qa_session_id: str
    project_id: str
    coding_session_id: str | None
    status: QaSessionStatus
    total_tests: int
    passed_tests: int
    failed_tests: int
    skipped_tests: int
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class TestSuiteCreate:
    """Generated suite ready to be persisted."""

    __test__ = False

    name: str
    test_type: TestType
    test_code: str
    file_path: str | None = None


@dataclass(slots=True)
class TestSuiteView:
    __test__ = False

    suite_id: str
    project_id: str
    coding_session_id: str | None
    unit_id: str | None
    name: str
    test_type: TestType
    status: TestSuiteStatus
    file_path: str | None
    test_code: str
    created_at: datetime
    generated_at: datetime | None


@dataclass(slots=True)
class TestCounts:
    """Aggregate counts of one test run."""

    __test__ = False

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(slots=True)
class TestExecutionView:
    __test__ = False

    execution_id: str
    suite_id: str
    qa_session_id: str | None
    status: TestExecutionStatus
    counts: TestCounts
    error: str | None
    started_at: datetime
    finished_at: datetime | None
