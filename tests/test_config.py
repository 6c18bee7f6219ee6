from __future__ import annotations

from pathlib import Path

import allure
import pytest

from tdd_conductor.config import DEFAULT_COMMAND_TEMPLATES, Settings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid(monkeypatch) -> None:
    for name in ("TDD_CONDUCTOR_DEFAULT_PROVIDER", "TDD_CONDUCTOR_MAX_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    settings.validate()
    assert settings.dispatcher.max_concurrency == 1
    assert settings.dispatcher.stuck_job_timeout_seconds == 1_800
    assert settings.dispatcher.untracked_job_timeout_seconds == 300
    assert settings.retry.max_attempts == 5
    assert settings.tdd.batch_size == 3
    assert settings.agent.default_provider == "cursor"
    assert settings.agent.command_templates["cursor"] == DEFAULT_COMMAND_TEMPLATES["cursor"]
    assert "{prompt}" in settings.agent.command_templates["echo"]


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TDD_CONDUCTOR_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TDD_CONDUCTOR_MAX_CONCURRENCY", "4")
    monkeypatch.setenv("TDD_CONDUCTOR_DEFAULT_PROVIDER", " Claude ")
    monkeypatch.setenv("TDD_CONDUCTOR_CLAUDE_COMMAND", "claude --print {prompt}")
    monkeypatch.setenv("TDD_CONDUCTOR_RETRY_BASE_SECONDS", "0.5")
    monkeypatch.setenv("TDD_CONDUCTOR_TDD_BATCH_SIZE", "5")
    monkeypatch.setenv("TDD_CONDUCTOR_WORKER_ID", "worker-a")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.dispatcher.max_concurrency == 4
    assert settings.dispatcher.worker_id == "worker-a"
    assert settings.agent.default_provider == "claude"
    assert settings.agent.command_templates["claude"] == "claude --print {prompt}"
    assert settings.retry.base_seconds == 0.5
    assert settings.tdd.batch_size == 5
    settings.validate()


def test_explicit_db_path_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TDD_CONDUCTOR_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("variable", "value", "message"),
    [
        ("TDD_CONDUCTOR_MAX_CONCURRENCY", "0", "MAX_CONCURRENCY"),
        ("TDD_CONDUCTOR_STUCK_JOB_TIMEOUT_SECONDS", "0", "STUCK_JOB_TIMEOUT_SECONDS"),
        ("TDD_CONDUCTOR_UNTRACKED_JOB_TIMEOUT_SECONDS", "4000", "UNTRACKED_JOB_TIMEOUT_SECONDS"),
        ("TDD_CONDUCTOR_JOB_TIMEOUT_SECONDS", "0", "JOB_TIMEOUT_SECONDS"),
        ("TDD_CONDUCTOR_DEFAULT_PROVIDER", "gemini", "DEFAULT_PROVIDER"),
        ("TDD_CONDUCTOR_CURSOR_COMMAND", "cursor-agent --print", "CURSOR_COMMAND"),
        ("TDD_CONDUCTOR_RETRY_MAX_ATTEMPTS", "0", "RETRY_MAX_ATTEMPTS"),
        ("TDD_CONDUCTOR_RETRY_MAX_SECONDS", "1", "RETRY_MAX_SECONDS"),
        ("TDD_CONDUCTOR_TDD_BATCH_SIZE", "0", "TDD_BATCH_SIZE"),
        ("TDD_CONDUCTOR_TDD_STUCK_THRESHOLD", "0", "TDD_STUCK_THRESHOLD"),
    ],
)
def test_validate_names_offending_variable(
    monkeypatch,
    variable: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.delenv("TDD_CONDUCTOR_DEFAULT_PROVIDER", raising=False)
    monkeypatch.setenv(variable, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()
