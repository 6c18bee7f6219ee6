"""Polling dispatcher with a bounded worker pool and stuck-job reclamation."""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, replace
from functools import partial

from tdd_conductor.orchestrator.models import JobEventType, JobPhase, JobView
from tdd_conductor.orchestrator.pipeline import JobPipeline, PipelineResult
from tdd_conductor.orchestrator.store import JobStore
from tdd_conductor.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatcherSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    polls: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    reclaimed: int = 0


class Dispatcher:
    """Claim pending jobs oldest-first and run them on a bounded thread pool.

    The active count and the in-flight set are both derived from the futures
    the pool is running, so they cannot drift apart; a future's done-callback
    is the only place a job leaves the in-flight set.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        pipeline: JobPipeline,
        worker_id: str,
        max_concurrency: int = 1,
        poll_interval_seconds: float = 2.0,
        capacity_poll_interval_seconds: float = 5.0,
        dispatch_delay_seconds: float = 5.0,
        test_generation_dispatch_delay_seconds: float = 10.0,
        dispatch_jitter_seconds: float = 3.0,
        stuck_job_timeout_seconds: float = 1800.0,
        untracked_job_timeout_seconds: float = 300.0,
        stop_event: threading.Event | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.store = store
        self.pipeline = pipeline
        self.worker_id = worker_id
        self.max_concurrency = max_concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.capacity_poll_interval_seconds = capacity_poll_interval_seconds
        self.dispatch_delay_seconds = dispatch_delay_seconds
        self.test_generation_dispatch_delay_seconds = test_generation_dispatch_delay_seconds
        self.dispatch_jitter_seconds = dispatch_jitter_seconds
        self.stuck_job_timeout_seconds = stuck_job_timeout_seconds
        self.untracked_job_timeout_seconds = untracked_job_timeout_seconds
        self._stop_event = stop_event or threading.Event()
        self._random = rng or random.Random()  # noqa: S311
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrency,
            thread_name_prefix="tdd-job",
        )
        self._running: dict[str, Future[PipelineResult]] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._summary = DispatcherSummary()

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- accounting ------------------------------------------------------------

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._running)

    @property
    def in_flight_ids(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._running)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrency - self.active_count)

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def summary(self) -> DispatcherSummary:
        with self._lock:
            return replace(self._summary)

    # -- dispatch --------------------------------------------------------------

    def poll(self) -> int:
        """Claim and start up to ``available_slots`` eligible jobs; return how many."""

        with self._lock:
            self._summary.polls += 1
        slots = self.available_slots
        if slots == 0 or self.stop_requested:
            return 0

        candidates = self.store.find_pending(excluding_ids=self.in_flight_ids, limit=slots)
        started = 0
        for job in candidates:
            if started > 0:
                self._wait(self._dispatch_delay(job))
            if self.stop_requested or self.available_slots == 0:
                break
            if not self.store.claim(job.job_id, worker_id=self.worker_id):
                logger.debug("Job %s no longer claimable", job.job_id)
                continue
            self._submit(job)
            started += 1
        return started

    def reclaim_stuck(self) -> int:
        """Fail running jobs nobody will finish and cascade to their sessions."""

        stuck = self.store.find_stuck(
            long_timeout_seconds=self.stuck_job_timeout_seconds,
            short_timeout_seconds=self.untracked_job_timeout_seconds,
            tracked_ids=self.in_flight_ids,
        )
        reclaimed = 0
        now = utc_now()
        for job in stuck:
            running_for = (now - job.started_at).total_seconds() if job.started_at else 0.0
            error = (
                f"Job timed out: running for {int(running_for)}s without completion "
                f"(worker={job.worker_id or 'unknown'})"
            )
            self.store.append_event(
                job.job_id,
                JobEventType.ERROR,
                {"reason": "stuck_job_timeout", "running_seconds": int(running_for)},
            )
            if self.pipeline.fail_job(job, error=error):
                reclaimed += 1
                logger.warning("Reclaimed stuck job %s after %ds", job.job_id, int(running_for))
        if reclaimed:
            with self._lock:
                self._summary.reclaimed += reclaimed
        return reclaimed

    def run_once(self) -> DispatcherSummary:
        """One cycle: reclaim stuck jobs, then poll."""

        before = self.summary()
        self.reclaim_stuck()
        self.poll()
        after = self.summary()
        return DispatcherSummary(
            polls=after.polls - before.polls,
            dispatched=after.dispatched - before.dispatched,
            succeeded=after.succeeded - before.succeeded,
            failed=after.failed - before.failed,
            reclaimed=after.reclaimed - before.reclaimed,
        )

    def run_loop(self, *, max_polls: int | None = None, drain: bool = True) -> DispatcherSummary:
        """Poll until stopped (signal, `stop()` or ``max_polls``), then drain in-flight jobs."""

        with self._signal_handlers():
            try:
                self.reclaim_stuck()
                polls = 0
                while not self.stop_requested:
                    if max_polls is not None and polls >= max_polls:
                        break
                    self.run_once()
                    polls += 1
                    if max_polls is not None and polls >= max_polls:
                        break
                    interval = (
                        self.capacity_poll_interval_seconds
                        if self.available_slots == 0
                        else self.poll_interval_seconds
                    )
                    self._wait(interval)
            finally:
                if drain:
                    self.drain()
        return self.summary()

    def stop(self) -> None:
        self._stop_event.set()

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight jobs; True when none is left running."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            if self._running:
                logger.info("Waiting for %d in-flight job(s)", len(self._running))
            while self._running:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)

    # -- internals -------------------------------------------------------------

    def _submit(self, job: JobView) -> None:
        future = self._executor.submit(self._execute, job)
        with self._lock:
            self._running[job.job_id] = future
            self._summary.dispatched += 1
        future.add_done_callback(partial(self._on_done, job.job_id))
        logger.info(
            "Dispatched job %s phase=%s active=%d/%d",
            job.job_id,
            job.phase.value if job.phase else "-",
            self.active_count,
            self.max_concurrency,
        )

    def _execute(self, job: JobView) -> PipelineResult:
        try:
            return self.pipeline.process(job)
        except Exception as error:
            # One misbehaving job must not take the pool thread or the loop down.
            logger.exception("Job %s crashed in pipeline", job.job_id)
            message = f"Unhandled pipeline error: {error}"
            try:
                self.pipeline.fail_job(job, error=message)
            except Exception:
                logger.exception("Could not mark job %s failed", job.job_id)
            return PipelineResult(job_id=job.job_id, succeeded=False, error=message)

    def _on_done(self, job_id: str, future: Future[PipelineResult]) -> None:
        succeeded = (
            not future.cancelled()
            and future.exception() is None
            and future.result().succeeded
        )
        with self._lock:
            self._running.pop(job_id, None)
            if succeeded:
                self._summary.succeeded += 1
            else:
                self._summary.failed += 1
            self._idle.notify_all()

    def _dispatch_delay(self, job: JobView) -> float:
        base = (
            self.test_generation_dispatch_delay_seconds
            if job.phase == JobPhase.TEST_GENERATION
            else self.dispatch_delay_seconds
        )
        jitter = (
            self._random.uniform(0, self.dispatch_jitter_seconds)
            if self.dispatch_jitter_seconds > 0
            else 0.0
        )
        return max(0.0, base) + jitter

    def _wait(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after in-flight jobs", name)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
