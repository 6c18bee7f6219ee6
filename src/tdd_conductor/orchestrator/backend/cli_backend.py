"""Subprocess-based runner for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import IO

from tdd_conductor.orchestrator.backend.base import (
    AgentRunRequest,
    AgentRunResult,
    ChunkCallback,
)
from tdd_conductor.orchestrator.failure_classifier import detect_failure_signature
from tdd_conductor.orchestrator.models import AgentMode

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_POLL_SECONDS = 0.1
_ERROR_TAIL_CHARS = 4_000

# Variables that would let an agent reach a display server or open a browser.
_GUI_ENV_VARS = ("DISPLAY", "WAYLAND_DISPLAY", "XAUTHORITY", "BROWSER")


class AgentRunError(RuntimeError):
    """Agent process could not be started; carries a retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentRunner:
    """Execute a provider command template as a non-interactive subprocess.

    Templates are split into argv first and placeholders are substituted per
    token, so the prompt always lands in a single argument and is never
    re-parsed by a shell.
    """

    def __init__(
        self,
        *,
        command_templates: Mapping[str, str],
        default_provider: str,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        if default_provider not in command_templates:
            raise ValueError(f"No command template for default provider {default_provider!r}")
        self.command_templates = dict(command_templates)
        self.default_provider = default_provider
        self.env_overrides = dict(env_overrides or {})

    def execute(  # noqa: PLR0913
        self,
        mode: AgentMode,
        prompt: str,
        work_dir: str | os.PathLike[str] | None,
        *,
        timeout_seconds: float,
        provider: str | None = None,
        on_output: ChunkCallback | None = None,
        on_error: ChunkCallback | None = None,
    ) -> AgentRunResult:
        """Run the agent once; see `run` for semantics."""

        return self.run(
            AgentRunRequest(
                mode=mode,
                prompt=prompt,
                work_dir=Path(work_dir) if work_dir is not None else None,
                timeout_seconds=timeout_seconds,
                provider=provider,
                on_output=on_output,
                on_error=on_error,
            ),
        )

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Spawn the agent, stream its output and collect the result.

        A zero exit code only counts as success when the combined output
        carries no provider failure signature. Spawn errors raise
        `AgentRunError`; everything else is reported through the result.
        """

        provider = request.provider or self.default_provider
        template = self.command_templates.get(provider)
        if template is None:
            raise AgentRunError(f"Unknown agent provider: {provider!r}", transient=False)
        argv = build_run_args(command_template=template, prompt=request.prompt, mode=request.mode)

        if request.work_dir is not None and not request.work_dir.is_dir():
            raise AgentRunError(
                f"Agent work dir does not exist: {request.work_dir}",
                transient=False,
            )

        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=request.work_dir,
                env=self._build_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=os.name != "nt",
            )
        except FileNotFoundError as error:
            raise AgentRunError(f"Agent command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}", transient=True) from error

        logger.debug(
            "Started agent provider=%s pid=%s mode=%s",
            provider,
            process.pid,
            request.mode.value,
        )
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            _start_reader(process.stdout, stdout_chunks, request.on_output, name="agent-stdout"),
            _start_reader(process.stderr, stderr_chunks, request.on_error, name="agent-stderr"),
        ]

        exit_code, timed_out = _wait_for_exit(process, request)
        for reader in readers:
            reader.join(timeout=5)

        output = "".join(stdout_chunks)
        stderr_text = "".join(stderr_chunks)
        duration_ms = int((time.monotonic() - started) * 1000)
        if timed_out:
            return AgentRunResult(
                success=False,
                output=output,
                error=f"Command timeout after {request.timeout_seconds:g}s",
                exit_code=exit_code,
                timed_out=True,
                duration_ms=duration_ms,
            )

        if exit_code != 0:
            return AgentRunResult(
                success=False,
                output=output,
                error=_tail(stderr_text or output) or f"Agent exited with code {exit_code}",
                exit_code=exit_code,
                duration_ms=duration_ms,
            )

        signature = detect_failure_signature(f"{output}\n{stderr_text}")
        if signature is not None:
            return AgentRunResult(
                success=False,
                output=output,
                error=f"{signature}: {_tail(stderr_text or output)}",
                exit_code=exit_code,
                duration_ms=duration_ms,
            )

        return AgentRunResult(
            success=True,
            output=output,
            error=None,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        for name in _GUI_ENV_VARS:
            env.pop(name, None)
        env["CI"] = "1"
        env["TERM"] = "dumb"
        env["NO_COLOR"] = "1"
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.update(self.env_overrides)
        return env


def build_run_args(*, command_template: str, prompt: str, mode: AgentMode) -> list[str]:
    """Render a command template into argv; `{prompt}` is mandatory."""

    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise AgentRunError("Agent command template must include {prompt}.", transient=False)

    try:
        tokens = shlex.split(stripped, posix=os.name != "nt")
        return [token.format(prompt=prompt, mode=mode.value) for token in tokens]
    except (KeyError, IndexError, ValueError) as error:
        raise AgentRunError(
            f"Unsupported command template {command_template!r}: {error}",
            transient=False,
        ) from error


def _start_reader(
    stream: IO[str] | None,
    sink: list[str],
    callback: ChunkCallback | None,
    *,
    name: str,
) -> threading.Thread:
    thread = threading.Thread(
        target=_pump_stream,
        args=(stream, sink, callback),
        daemon=True,
        name=name,
    )
    thread.start()
    return thread


def _pump_stream(stream: IO[str] | None, sink: list[str], callback: ChunkCallback | None) -> None:
    if stream is None:
        return
    with stream:
        for chunk in iter(stream.readline, ""):
            sink.append(chunk)
            if callback is None:
                continue
            try:
                callback(chunk)
            except Exception:
                # The pipe must keep draining or the agent blocks on a full buffer.
                logger.exception("Agent output callback failed")


def _wait_for_exit(process: subprocess.Popen[str], request: AgentRunRequest) -> tuple[int, bool]:
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0.0, request.graceful_shutdown_seconds or 0.0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if now - start_monotonic >= request.timeout_seconds:
            logger.warning("Agent pid=%s timed out, killing", process.pid)
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        if request.shutdown_requested is not None and request.shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True

        time.sleep(_POLL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        _send_signal(process, signal.SIGTERM)
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            _send_signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        except OSError:
            return
        process.wait(timeout=2)


def _send_signal(process: subprocess.Popen[str], signum: int) -> None:
    # Agents spawn helpers of their own; the whole process group goes down.
    if os.name != "nt":
        os.killpg(process.pid, signum)
        return
    if signum == signal.SIGTERM:
        process.terminate()
    else:
        process.kill()


def _tail(text: str) -> str:
    stripped = text.strip()
    if len(stripped) <= _ERROR_TAIL_CHARS:
        return stripped
    return stripped[-_ERROR_TAIL_CHARS:]
