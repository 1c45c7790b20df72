from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ralph_loop.config import DEFAULT_COMPLETION_TOKEN, AgentSettings, LoopSettings, Settings

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Configuration"),
]


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.loop.max_loops == 50
    assert settings.loop.success_pause_seconds == 1.0
    assert settings.loop.retry_pause_seconds == 2.0
    assert settings.agent.default_agent == "claude"
    assert settings.agent.completion_token == DEFAULT_COMPLETION_TOKEN == "RALPH_DONE"
    assert settings.agent.command_overrides == {}
    assert settings.session.session_dir == Path(".ralph")
    assert settings.session.audit_log_path == Path("ralph.log")
    assert settings.session.status_file_path is None
    assert settings.session.keep_logs is False
    settings.validate()


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_LOOP_MAX_LOOPS", "7")
    monkeypatch.setenv("RALPH_LOOP_AGENT", " Gemini ")
    monkeypatch.setenv("RALPH_LOOP_COMPLETION_TOKEN", "ALL_DONE")
    monkeypatch.setenv("RALPH_LOOP_SESSION_DIR", "state")
    monkeypatch.setenv("RALPH_LOOP_STATUS_FILE", "out/status.json")
    monkeypatch.setenv("RALPH_LOOP_KEEP_LOGS", "yes")
    monkeypatch.setenv("RALPH_LOOP_CLAUDE_COMMAND", "claude --print {prompt}")
    monkeypatch.setenv("RALPH_LOOP_AIDER_COMMAND", "aider --message {prompt}")

    settings = Settings.from_env()

    assert settings.loop.max_loops == 7
    assert settings.agent.default_agent == "gemini"
    assert settings.agent.completion_token == "ALL_DONE"
    assert settings.session.session_dir == Path("state")
    assert settings.session.status_file_path == Path("out/status.json")
    assert settings.session.keep_logs is True
    assert settings.agent.command_overrides == {
        "claude": "claude --print {prompt}",
        "aider": "aider --message {prompt}",
    }


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_LOOP_KEEP_LOGS", "sometimes")

    with pytest.raises(ValueError, match="RALPH_LOOP_KEEP_LOGS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(loop=LoopSettings(max_loops=0)), "RALPH_LOOP_MAX_LOOPS"),
        (Settings(loop=LoopSettings(retry_pause_seconds=-1)), "RETRY_PAUSE_SECONDS"),
        (Settings(agent=AgentSettings(completion_token="")), "COMPLETION_TOKEN"),
        (Settings(agent=AgentSettings(completion_token=" DONE")), "COMPLETION_TOKEN"),
        (Settings(agent=AgentSettings(completion_token="DO\nNE")), "COMPLETION_TOKEN"),
        (
            Settings(agent=AgentSettings(command_overrides={"claude": "  "})),
            "Empty command override",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_rejects_working_directory_as_session_dir(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_LOOP_SESSION_DIR", ".")

    with pytest.raises(ValueError, match="RALPH_LOOP_SESSION_DIR"):
        Settings.from_env().validate()
