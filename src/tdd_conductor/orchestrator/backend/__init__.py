"""Agent runner implementations."""

from tdd_conductor.orchestrator.backend.base import (
    AgentRunner,
    AgentRunRequest,
    AgentRunResult,
    ChunkCallback,
)
from tdd_conductor.orchestrator.backend.cli_backend import AgentRunError, CliAgentRunner

__all__ = [
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "AgentRunner",
    "ChunkCallback",
    "CliAgentRunner",
]
