from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from tdd_conductor.orchestrator.backend import AgentRunError, AgentRunRequest, CliAgentRunner
from tdd_conductor.orchestrator.backend.cli_backend import TIMEOUT_EXIT_CODE, build_run_args
from tdd_conductor.orchestrator.models import AgentMode

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Subprocess Runner"),
]

_PYTHON = shlex.quote(sys.executable)


def _runner(template: str) -> CliAgentRunner:
    return CliAgentRunner(command_templates={"echo": template}, default_provider="echo")


def _request(prompt: str = "make it green", **kwargs) -> AgentRunRequest:
    return AgentRunRequest(
        mode=kwargs.pop("mode", AgentMode.AGENT),
        prompt=prompt,
        work_dir=kwargs.pop("work_dir", None),
        timeout_seconds=kwargs.pop("timeout_seconds", 30),
        **kwargs,
    )


def test_build_run_args_keeps_prompt_as_single_argument() -> None:
    argv = build_run_args(
        command_template="agent --mode {mode} -p {prompt}",
        prompt='fix "quoted" && rm -rf / ; echo $HOME',
        mode=AgentMode.PATCH,
    )

    assert argv == ["agent", "--mode", "patch", "-p", 'fix "quoted" && rm -rf / ; echo $HOME']


@pytest.mark.parametrize("template", ["", "agent --no-prompt", "agent {prompt} {unknown}"])
def test_build_run_args_rejects_unusable_templates(template: str) -> None:
    with pytest.raises(AgentRunError) as error:
        build_run_args(command_template=template, prompt="x", mode=AgentMode.AGENT)

    assert error.value.transient is False


def test_runner_streams_output_and_succeeds(echo_agent_command: str) -> None:
    chunks: list[str] = []

    result = _runner(echo_agent_command).run(
        _request("hello agent", on_output=chunks.append),
    )

    assert result.success is True
    assert result.exit_code == 0
    assert "hello agent" in result.output
    assert "".join(chunks) == result.output
    assert result.timed_out is False


def test_runner_reports_stderr_on_non_zero_exit(echo_agent_command: str) -> None:
    errors: list[str] = []
    template = f"{echo_agent_command} --stderr 'compile failed' --exit-code 3"

    result = _runner(template).run(_request(on_error=errors.append))

    assert result.success is False
    assert result.exit_code == 3
    assert result.error == "compile failed"
    assert errors == ["compile failed\n"]


def test_runner_treats_failure_signature_with_exit_zero_as_failure(
    echo_agent_command: str,
) -> None:
    template = f"{echo_agent_command} --stderr 'ConnectError: upstream closed'"

    result = _runner(template).run(_request())

    assert result.exit_code == 0
    assert result.success is False
    assert result.error is not None
    assert result.error.startswith("connecterror")


def test_runner_kills_agent_after_timeout(echo_agent_command: str) -> None:
    template = f"{echo_agent_command} --sleep 30"

    result = _runner(template).run(_request(timeout_seconds=0.5))

    assert result.success is False
    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.error == "Command timeout after 0.5s"
    assert result.duration_ms < 10_000


def test_runner_terminates_agent_on_shutdown_after_grace_period(
    echo_agent_command: str,
) -> None:
    template = f"{echo_agent_command} --sleep 30"

    result = _runner(template).run(
        _request(shutdown_requested=lambda: True, graceful_shutdown_seconds=0),
    )

    assert result.success is False
    assert result.timed_out is True


def test_runner_closes_stdin_and_strips_gui_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DISPLAY", ":0")
    template = (
        f"{_PYTHON} -c "
        "\"import os, sys; print(repr(sys.stdin.read()), os.environ.get('CI'), "
        "os.environ.get('DISPLAY'), os.getcwd())\" {prompt}"
    )

    result = _runner(template).run(_request(work_dir=tmp_path, timeout_seconds=10))

    assert result.success is True
    assert result.output.strip() == f"'' 1 None {tmp_path.resolve()}"


def test_runner_rejects_missing_work_dir(tmp_path: Path, echo_agent_command: str) -> None:
    with pytest.raises(AgentRunError, match="does not exist") as error:
        _runner(echo_agent_command).run(_request(work_dir=tmp_path / "missing"))

    assert error.value.transient is False


def test_runner_raises_fatal_error_when_command_is_missing() -> None:
    runner = _runner("definitely-not-an-installed-agent-cli {prompt}")

    with pytest.raises(AgentRunError, match="not found") as error:
        runner.run(_request())

    assert error.value.transient is False


def test_runner_rejects_unknown_provider(echo_agent_command: str) -> None:
    with pytest.raises(AgentRunError, match="Unknown agent provider"):
        _runner(echo_agent_command).run(_request(provider="gemini"))


def test_execute_passes_mode_placeholder(echo_agent_command: str) -> None:
    result = _runner(f"{echo_agent_command} --mode {{mode}}").execute(
        AgentMode.REVIEW,
        "review please",
        None,
        timeout_seconds=30,
    )

    assert result.success is True
    assert "mode=review" in result.output
    assert "review please" in result.output
