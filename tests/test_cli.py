from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from ralph_loop import __version__
from ralph_loop.contracts import read_status_event
from ralph_loop.controllers import read_task_text, resolve_agent_and_task_args
from ralph_loop.main import ralph_loop

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("CLI"),
]

_KNOWN = {"claude", "gemini", "stub"}


def test_version_option() -> None:
    result = CliRunner().invoke(ralph_loop, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_leading_tool_name_selects_agent() -> None:
    assert resolve_agent_and_task_args(
        agent_option=None,
        args=("gemini", "fix", "the", "build"),
        known_tools=_KNOWN,
        default_agent="claude",
    ) == ("gemini", ("fix", "the", "build"))


def test_agent_option_keeps_all_positional_text() -> None:
    assert resolve_agent_and_task_args(
        agent_option="Stub",
        args=("gemini", "is", "a", "word"),
        known_tools=_KNOWN,
        default_agent="claude",
    ) == ("stub", ("gemini", "is", "a", "word"))


def test_default_agent_when_first_word_is_not_a_tool() -> None:
    assert resolve_agent_and_task_args(
        agent_option=None,
        args=("fix", "it"),
        known_tools=_KNOWN,
        default_agent="claude",
    ) == ("claude", ("fix", "it"))


def test_task_file_wins_over_arguments_and_stdin(tmp_path: Path) -> None:
    task_file = tmp_path / "tasks.md"
    task_file.write_text("- [ ] from file\n", "utf-8")

    text = read_task_text(task_file=task_file, task_args=("from", "args"), stdin_text="from stdin")

    assert text == "- [ ] from file\n"
    assert read_task_text(task_file=None, task_args=("from", "args"), stdin_text="x") == (
        "from args"
    )
    assert read_task_text(task_file=None, task_args=(), stdin_text="from stdin") == "from stdin"


def test_cli_completes_piped_task_list(tmp_path: Path, monkeypatch, stub_env) -> None:
    monkeypatch.chdir(tmp_path)
    stub_env("succeed")

    result = CliRunner().invoke(
        ralph_loop,
        ["--agent", "stub", "--status-file", "status.json"],
        input="- [ ] first\n- [x] done already\n- [ ] second\n",
    )

    assert result.exit_code == 0, result.output
    assert "Finished: succeeded (3/3 tasks, 2 iterations)." in result.output
    assert (tmp_path / ".ralph" / "attempts" / "attempt-0002.log").exists()
    assert (tmp_path / ".ralph" / "ENVIRONMENT.md").exists()
    assert "finish reason=succeeded" in (tmp_path / "ralph.log").read_text("utf-8")
    assert read_status_event(tmp_path / "status.json")["event"] == "complete"


def test_cli_positional_tool_and_task(tmp_path: Path, monkeypatch, stub_env) -> None:
    monkeypatch.chdir(tmp_path)
    stub_env("succeed")

    result = CliRunner().invoke(ralph_loop, ["stub", "Add", "a", "health", "endpoint"])

    assert result.exit_code == 0, result.output
    task_text = (tmp_path / ".ralph" / "TASK.md").read_text("utf-8")
    assert "- [x] 1. Add a health endpoint" in task_text


def test_cli_exhausted_budget_exits_1(tmp_path: Path, monkeypatch, stub_env) -> None:
    monkeypatch.chdir(tmp_path)
    stub_env("fail")

    result = CliRunner().invoke(
        ralph_loop,
        ["--agent", "stub", "--max-loops", "2", "one task"],
    )

    assert result.exit_code == 1, result.output
    assert "Finished: exhausted (0/1 tasks, 2 iterations)." in result.output
    assert "Loop budget of 2 iterations exhausted" in result.output


def test_cli_custom_token_and_session_dir(tmp_path: Path, monkeypatch, stub_env) -> None:
    monkeypatch.chdir(tmp_path)
    stub_env("succeed", extra="--token SHIP_IT")

    result = CliRunner().invoke(
        ralph_loop,
        ["--agent", "stub", "--token", "SHIP_IT", "--session-dir", "state", "ship it"],
    )

    assert result.exit_code == 0, result.output
    assert "SHIP_IT" in (tmp_path / "state" / "TASK.md").read_text("utf-8")


def test_cli_task_file(tmp_path: Path, monkeypatch, stub_env) -> None:
    monkeypatch.chdir(tmp_path)
    stub_env("succeed")
    (tmp_path / "TODO.md").write_text("1. alpha\n2. beta\n3. gamma\n", "utf-8")

    result = CliRunner().invoke(ralph_loop, ["--agent", "stub", "--task-file", "TODO.md"])

    assert result.exit_code == 0, result.output
    assert "Finished: succeeded (3/3 tasks, 3 iterations)." in result.output


def test_cli_empty_input_is_configuration_error(tmp_path: Path, monkeypatch, stub_env) -> None:
    monkeypatch.chdir(tmp_path)
    stub_env("succeed")

    result = CliRunner().invoke(ralph_loop, ["--agent", "stub"], input="\n  \n")

    assert result.exit_code == 2
    assert "Task input is empty" in result.output
    assert not (tmp_path / ".ralph").exists()


def test_cli_unknown_agent_is_configuration_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(ralph_loop, ["--agent", "cursor", "do it"])

    assert result.exit_code == 2
    assert "Unknown agent tool 'cursor'" in result.output


def test_cli_missing_executable_is_configuration_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RALPH_LOOP_GHOST_COMMAND", "ralph-loop-missing-binary-xyz {prompt}")

    result = CliRunner().invoke(ralph_loop, ["ghost", "do it"])

    assert result.exit_code == 2
    assert "Executable not found in PATH" in result.output


def test_cli_invalid_environment_is_configuration_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RALPH_LOOP_MAX_LOOPS", "many")

    result = CliRunner().invoke(ralph_loop, ["do it"])

    assert result.exit_code == 2


def test_cli_rejects_non_positive_max_loops() -> None:
    result = CliRunner().invoke(ralph_loop, ["--max-loops", "0", "do it"])

    assert result.exit_code == 2


def test_cli_token_found_in_prompt_is_configuration_error(
    tmp_path: Path,
    monkeypatch,
    stub_env,
) -> None:
    monkeypatch.chdir(tmp_path)
    stub_env("succeed", extra="--token Read")

    result = CliRunner().invoke(ralph_loop, ["--agent", "stub", "--token", "Read", "do it"])

    assert result.exit_code == 2
    assert "occurs in the loop prompt" in result.output
