from __future__ import annotations

import threading

import allure

from tdd_conductor.orchestrator.models import (
    JobCreate,
    JobEventType,
    JobPhase,
    JobStatus,
    SessionStatus,
    TestCounts,
    TestExecutionStatus,
    TestSuiteCreate,
    TestSuiteStatus,
    TestType,
)
from tdd_conductor.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Queue Reliability"),
]


def _enqueue(repository: OrchestratorRepository, prompt: str = "do it", **kwargs) -> str:
    return repository.enqueue_job(JobCreate(project_id="p1", prompt=prompt, **kwargs)).job_id


def test_enqueue_stores_prompt_and_linkage_in_args(repository: OrchestratorRepository) -> None:
    session = repository.create_session(project_id="p1")
    job = repository.enqueue_job(
        JobCreate(
            project_id="p1",
            prompt="write tests",
            provider="claude",
            phase=JobPhase.TEST_GENERATION,
            coding_session_id=session.session_id,
            work_dir="/tmp/project",
            args={"unit": "calculator"},
        ),
    )

    assert job.status == JobStatus.PENDING
    assert job.prompt == "write tests"
    assert job.work_dir == "/tmp/project"
    assert job.args["phase"] == "test_generation"
    assert job.args["coding_session_id"] == session.session_id
    assert job.args["unit"] == "calculator"
    assert job.coding_session_id == session.session_id


def test_find_pending_is_oldest_first_and_honours_exclusions(
    repository: OrchestratorRepository,
) -> None:
    first = _enqueue(repository, "one")
    second = _enqueue(repository, "two")
    third = _enqueue(repository, "three")

    assert [job.job_id for job in repository.find_pending(limit=10)] == [first, second, third]
    assert [job.job_id for job in repository.find_pending(limit=2)] == [first, second]
    assert [
        job.job_id for job in repository.find_pending(excluding_ids={first}, limit=10)
    ] == [second, third]
    assert repository.find_pending(limit=0) == []


def test_claim_is_exclusive(repository: OrchestratorRepository) -> None:
    job_id = _enqueue(repository)

    assert repository.claim(job_id, worker_id="w1") is True
    assert repository.claim(job_id, worker_id="w2") is False

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.RUNNING
    assert job.worker_id == "w1"
    assert job.started_at is not None


def test_concurrent_claims_have_a_single_winner(repository: OrchestratorRepository) -> None:
    job_id = _enqueue(repository)
    results: list[bool] = []
    lock = threading.Lock()
    start = threading.Barrier(6)

    def _claim(worker: str) -> None:
        start.wait()
        claimed = repository.claim(job_id, worker_id=worker)
        with lock:
            results.append(claimed)

    threads = [threading.Thread(target=_claim, args=(f"w{index}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert results.count(True) == 1
    assert results.count(False) == 5


def test_complete_is_idempotent(repository: OrchestratorRepository) -> None:
    job_id = _enqueue(repository)
    repository.claim(job_id)

    assert repository.complete(job_id, output="first") is True
    assert repository.complete(job_id, output="second") is False
    assert repository.fail(job_id, error="late failure") is False

    details = repository.get_job_details(job_id)
    assert details is not None
    assert details.job.status == JobStatus.COMPLETED
    assert details.job.output == "first"
    event_types = [event.event_type for event in details.events]
    assert event_types.count(JobEventType.COMPLETED) == 1
    assert JobEventType.FAILED not in event_types


def test_complete_requires_running_job(repository: OrchestratorRepository) -> None:
    job_id = _enqueue(repository)

    assert repository.complete(job_id, output="too early") is False
    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING


def test_fail_keeps_raw_output_and_records_event(repository: OrchestratorRepository) -> None:
    job_id = _enqueue(repository)
    repository.claim(job_id)

    assert repository.fail(job_id, error="No payload", output="prose only") is True

    details = repository.get_job_details(job_id)
    assert details is not None
    assert details.job.status == JobStatus.FAILED
    assert details.job.error == "No payload"
    assert details.job.output == "prose only"
    failed = [event for event in details.events if event.event_type == JobEventType.FAILED]
    assert failed[0].details["output_preview"] == "prose only"


def test_append_output_accumulates_only_while_running(repository: OrchestratorRepository) -> None:
    job_id = _enqueue(repository)
    repository.append_output(job_id, "ignored")
    repository.claim(job_id)
    repository.append_output(job_id, "line 1\n")
    repository.append_output(job_id, "line 2\n")

    job = repository.get_job(job_id)
    assert job is not None
    assert job.output == "line 1\nline 2\n"


def test_paused_session_jobs_are_not_claimable_until_resumed(
    repository: OrchestratorRepository,
) -> None:
    session = repository.create_session(project_id="p1")
    repository.transition_session(
        session.session_id,
        from_statuses=[SessionStatus.PENDING],
        to_status=SessionStatus.TDD_GREEN,
    )
    job_id = _enqueue(repository, coding_session_id=session.session_id)
    repository.transition_session(
        session.session_id,
        from_statuses=[SessionStatus.TDD_GREEN],
        to_status=SessionStatus.PAUSED,
    )

    assert repository.find_pending(limit=10) == []
    assert repository.claim(job_id) is False

    repository.transition_session(
        session.session_id,
        from_statuses=[SessionStatus.PAUSED],
        to_status=SessionStatus.TDD_GREEN,
    )
    assert [job.job_id for job in repository.find_pending(limit=10)] == [job_id]
    assert repository.claim(job_id) is True


def test_find_stuck_uses_short_timeout_only_for_untracked_jobs(
    repository: OrchestratorRepository,
    backdate_start,
) -> None:
    tracked = _enqueue(repository)
    untracked = _enqueue(repository)
    ancient = _enqueue(repository)
    for job_id in (tracked, untracked, ancient):
        repository.claim(job_id)
    backdate_start(tracked, 600)
    backdate_start(untracked, 600)
    backdate_start(ancient, 4_000)

    stuck = repository.find_stuck(
        long_timeout_seconds=1_800,
        short_timeout_seconds=300,
        tracked_ids={tracked, ancient},
    )

    assert {job.job_id for job in stuck} == {untracked, ancient}


def test_transition_session_is_guarded(repository: OrchestratorRepository) -> None:
    session = repository.create_session(project_id="p1")

    assert repository.transition_session(
        session.session_id,
        from_statuses=[SessionStatus.RUNNING],
        to_status=SessionStatus.PAUSED,
    ) is False
    assert repository.fail_session(session.session_id, error="boom") is True
    assert repository.fail_session(session.session_id, error="again") is False
    assert repository.update_session_progress(session.session_id, progress=40) is False

    stored = repository.get_session(session.session_id)
    assert stored is not None
    assert stored.status == SessionStatus.FAILED
    assert stored.error == "boom"
    assert stored.completed_at is not None
    assert [event.event_type for event in repository.list_session_events(session.session_id)] == [
        "error",
    ]


def test_progress_updates_keep_a_paused_session_paused(repository: OrchestratorRepository) -> None:
    session = repository.create_session(project_id="p1")
    repository.transition_session(
        session.session_id,
        from_statuses=[SessionStatus.PENDING],
        to_status=SessionStatus.PAUSED,
    )

    assert repository.replace_tdd_cycle(
        session.session_id,
        cycle={"test_index": 3},
        status=SessionStatus.TDD_GREEN,
        progress=25,
    ) is True

    stored = repository.get_session(session.session_id)
    assert stored is not None
    assert stored.status == SessionStatus.PAUSED
    assert stored.progress == 25
    assert stored.tdd_cycle == {"test_index": 3}


def test_fail_pending_jobs_for_session_leaves_running_jobs(
    repository: OrchestratorRepository,
) -> None:
    session = repository.create_session(project_id="p1")
    running = _enqueue(repository, coding_session_id=session.session_id)
    repository.claim(running)
    queued = _enqueue(repository, coding_session_id=session.session_id)
    other = _enqueue(repository)

    assert repository.fail_pending_jobs_for_session(session.session_id, error="stop") == 1

    assert repository.get_job(queued).status == JobStatus.FAILED
    assert repository.get_job(running).status == JobStatus.RUNNING
    assert repository.get_job(other).status == JobStatus.PENDING


def test_test_executions_are_write_once(repository: OrchestratorRepository) -> None:
    session = repository.create_session(project_id="p1", programmer_type="backend")
    [suite] = repository.create_test_suites(
        project_id="p1",
        coding_session_id=session.session_id,
        unit_id=None,
        suites=[
            TestSuiteCreate(name="unit_backend", test_type=TestType.UNIT, test_code="assert 1"),
        ],
    )
    assert suite.status == TestSuiteStatus.READY

    qa = repository.create_qa_session(project_id="p1", coding_session_id=session.session_id)
    execution = repository.start_test_execution(
        suite_id=suite.suite_id,
        qa_session_id=qa.qa_session_id,
    )
    assert repository.list_test_suites(coding_session_id=session.session_id)[0].status == (
        TestSuiteStatus.RUNNING
    )

    counts = TestCounts(total=2, passed=2)
    assert repository.finish_test_execution(
        execution.execution_id,
        status=TestExecutionStatus.PASSED,
        counts=counts,
    ) is True
    assert repository.finish_test_execution(
        execution.execution_id,
        status=TestExecutionStatus.FAILED,
        counts=TestCounts(total=2, failed=2),
    ) is False

    [stored] = repository.list_test_executions(suite_id=suite.suite_id)
    assert stored.status == TestExecutionStatus.PASSED
    assert stored.counts == counts
    assert stored.finished_at is not None
