"""Runner interface for external coding-agent execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from tdd_conductor.orchestrator.models import AgentMode

ChunkCallback = Callable[[str], None]


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent invocation."""

    mode: AgentMode
    prompt: str
    work_dir: Path | None
    timeout_seconds: float
    provider: str | None = None
    on_output: ChunkCallback | None = None
    on_error: ChunkCallback | None = None
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Outcome of one agent invocation."""

    success: bool
    output: str
    error: str | None = None
    exit_code: int | None = None
    timed_out: bool = False
    duration_ms: int = 0


class AgentRunner(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent once and return its collected output."""
