"""Persistence contract consumed by the dispatcher and the TDD engine."""

from __future__ import annotations

from collections.abc import Collection
from typing import Any, Protocol

from tdd_conductor.orchestrator.models import JobEventType, JobView


class JobStore(Protocol):
    """Durable job queue with append-only events.

    Every mutating call is a guarded single-row update: it returns ``False``
    when the job is not in the state the transition expects, so re-applying
    a transition is harmless.
    """

    def find_pending(self, *, excluding_ids: Collection[str], limit: int) -> list[JobView]: ...

    def claim(self, job_id: str, *, worker_id: str | None = None) -> bool: ...

    def complete(self, job_id: str, *, output: str) -> bool: ...

    def fail(self, job_id: str, *, error: str) -> bool: ...

    def append_event(
        self,
        job_id: str,
        event_type: JobEventType,
        payload: dict[str, Any] | None = None,
    ) -> None: ...

    def append_output(self, job_id: str, chunk: str) -> None: ...

    def find_stuck(
        self,
        *,
        long_timeout_seconds: float,
        short_timeout_seconds: float,
        tracked_ids: Collection[str],
    ) -> list[JobView]: ...
