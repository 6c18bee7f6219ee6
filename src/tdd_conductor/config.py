"""Runtime configuration for the job dispatcher, agent runner and TDD engine."""

from __future__ import annotations

import os
import shlex
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path

_PREFIX = "TDD_CONDUCTOR_"

DEFAULT_COMMAND_TEMPLATES: dict[str, str] = {
    "cursor": "cursor-agent --print --output-format text {prompt}",
    "claude": "claude -p {prompt}",
}


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class DispatcherSettings:
    """Polling, concurrency and reclamation settings."""

    max_concurrency: int = 1
    poll_interval_seconds: float = 2.0
    capacity_poll_interval_seconds: float = 5.0
    dispatch_delay_seconds: float = 5.0
    test_generation_dispatch_delay_seconds: float = 10.0
    dispatch_jitter_seconds: float = 3.0
    test_generation_pre_delay_seconds: float = 8.0
    stuck_job_timeout_seconds: int = 1_800
    untracked_job_timeout_seconds: int = 300
    worker_id: str = field(default_factory=default_worker_id)


@dataclass(slots=True)
class AgentSettings:
    """External agent CLI settings."""

    default_provider: str = "cursor"
    job_timeout_seconds: int = 600
    graceful_shutdown_seconds: int = 30
    command_templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_COMMAND_TEMPLATES),
    )


@dataclass(slots=True)
class RetrySettings:
    """Backoff for transient provider failures."""

    max_attempts: int = 5
    base_seconds: float = 10.0
    max_seconds: float = 120.0
    jitter_seconds: float = 2.0


@dataclass(slots=True)
class TddSettings:
    batch_size: int = 3
    stuck_threshold: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".tdd_conductor.db")
    sqlite_busy_timeout_ms: int = 5_000
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    tdd: TddSettings = field(default_factory=TddSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``TDD_CONDUCTOR_*`` environment variables."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".tdd_conductor.db")),
            sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            dispatcher=DispatcherSettings(
                max_concurrency=int(_env("MAX_CONCURRENCY", "1")),
                poll_interval_seconds=float(_env("POLL_INTERVAL_SECONDS", "2")),
                capacity_poll_interval_seconds=float(
                    _env("CAPACITY_POLL_INTERVAL_SECONDS", "5"),
                ),
                dispatch_delay_seconds=float(_env("DISPATCH_DELAY_SECONDS", "5")),
                test_generation_dispatch_delay_seconds=float(
                    _env("TEST_GENERATION_DISPATCH_DELAY_SECONDS", "10"),
                ),
                dispatch_jitter_seconds=float(_env("DISPATCH_JITTER_SECONDS", "3")),
                test_generation_pre_delay_seconds=float(
                    _env("TEST_GENERATION_PRE_DELAY_SECONDS", "8"),
                ),
                stuck_job_timeout_seconds=int(_env("STUCK_JOB_TIMEOUT_SECONDS", "1800")),
                untracked_job_timeout_seconds=int(_env("UNTRACKED_JOB_TIMEOUT_SECONDS", "300")),
                worker_id=_env("WORKER_ID", "") or default_worker_id(),
            ),
            agent=AgentSettings(
                default_provider=_env("DEFAULT_PROVIDER", "cursor").strip().lower(),
                job_timeout_seconds=int(_env("JOB_TIMEOUT_SECONDS", "600")),
                graceful_shutdown_seconds=int(_env("GRACEFUL_SHUTDOWN_SECONDS", "30")),
                command_templates={
                    "cursor": _env("CURSOR_COMMAND", DEFAULT_COMMAND_TEMPLATES["cursor"]),
                    "claude": _env("CLAUDE_COMMAND", DEFAULT_COMMAND_TEMPLATES["claude"]),
                    "echo": _env("ECHO_COMMAND", _echo_command()),
                },
            ),
            retry=RetrySettings(
                max_attempts=int(_env("RETRY_MAX_ATTEMPTS", "5")),
                base_seconds=float(_env("RETRY_BASE_SECONDS", "10")),
                max_seconds=float(_env("RETRY_MAX_SECONDS", "120")),
                jitter_seconds=float(_env("RETRY_JITTER_SECONDS", "2")),
            ),
            tdd=TddSettings(
                batch_size=int(_env("TDD_BATCH_SIZE", "3")),
                stuck_threshold=int(_env("TDD_STUCK_THRESHOLD", "3")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        dispatcher = self.dispatcher
        if dispatcher.max_concurrency <= 0:
            raise ValueError(f"{_PREFIX}MAX_CONCURRENCY must be > 0.")
        if dispatcher.poll_interval_seconds < 0 or dispatcher.capacity_poll_interval_seconds < 0:
            raise ValueError(f"{_PREFIX}POLL_INTERVAL_SECONDS must be >= 0.")
        if dispatcher.stuck_job_timeout_seconds <= 0:
            raise ValueError(f"{_PREFIX}STUCK_JOB_TIMEOUT_SECONDS must be > 0.")
        if dispatcher.untracked_job_timeout_seconds <= 0:
            raise ValueError(f"{_PREFIX}UNTRACKED_JOB_TIMEOUT_SECONDS must be > 0.")
        if dispatcher.untracked_job_timeout_seconds > dispatcher.stuck_job_timeout_seconds:
            raise ValueError(
                f"{_PREFIX}UNTRACKED_JOB_TIMEOUT_SECONDS must not exceed "
                f"{_PREFIX}STUCK_JOB_TIMEOUT_SECONDS.",
            )
        if self.agent.job_timeout_seconds <= 0:
            raise ValueError(f"{_PREFIX}JOB_TIMEOUT_SECONDS must be > 0.")
        if self.agent.default_provider not in self.agent.command_templates:
            raise ValueError(
                f"{_PREFIX}DEFAULT_PROVIDER must be one of: "
                f"{', '.join(sorted(self.agent.command_templates))}.",
            )
        for provider, template in self.agent.command_templates.items():
            if "{prompt}" not in template:
                raise ValueError(f"{_PREFIX}{provider.upper()}_COMMAND must include {{prompt}}.")
        if self.retry.max_attempts <= 0:
            raise ValueError(f"{_PREFIX}RETRY_MAX_ATTEMPTS must be > 0.")
        if self.retry.base_seconds < 0 or self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                f"{_PREFIX}RETRY_MAX_SECONDS must be >= {_PREFIX}RETRY_BASE_SECONDS >= 0.",
            )
        if self.tdd.batch_size <= 0:
            raise ValueError(f"{_PREFIX}TDD_BATCH_SIZE must be > 0.")
        if self.tdd.stuck_threshold <= 0:
            raise ValueError(f"{_PREFIX}TDD_STUCK_THRESHOLD must be > 0.")


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_PREFIX}{name}", default)


def _echo_command() -> str:
    module = "tdd_conductor.orchestrator.backend.echo_agent"
    return f"{shlex.quote(sys.executable)} -m {module} --prompt {{prompt}}"
