"""CLI entrypoint for ralph-loop."""

import logging
import sys
from pathlib import Path

import rich_click as click

from ralph_loop import __version__
from ralph_loop.backend import AgentRunError
from ralph_loop.controllers import LoopCliController, LoopRunCommand
from ralph_loop.loop import EXIT_CONFIG_ERROR

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()


class ConfigurationError(click.ClickException):
    """Invalid input or environment detected before the loop starts."""

    exit_code = EXIT_CONFIG_ERROR


@click.command()
@click.version_option(version=__version__, prog_name="ralph-loop")
@click.argument("args", nargs=-1)
@click.option(
    "--agent",
    "-a",
    default=None,
    help=(
        "Agent tool: claude, gemini, copilot, codex, opencode or any tool with a "
        "RALPH_LOOP_<TOOL>_COMMAND override. A leading positional tool name works too."
    ),
)
@click.option(
    "--max-loops",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Total agent invocations across all tasks. Default 50 or RALPH_LOOP_MAX_LOOPS.",
)
@click.option(
    "--task-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Markdown file with the task list. Wins over positional text and stdin.",
)
@click.option(
    "--keep-logs/--no-keep-logs",
    default=None,
    help="Keep transcripts and the audit log from previous sessions.",
)
@click.option(
    "--status-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the latest loop event as one JSON line to this file.",
)
@click.option(
    "--token",
    "completion_token",
    default=None,
    help="Completion token the agent must print. Default RALPH_DONE.",
)
@click.option(
    "--session-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for the state files shared with the agent. Default .ralph.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
def ralph_loop(  # noqa: PLR0913
    args: tuple[str, ...],
    agent: str | None,
    max_loops: int | None,
    task_file: Path | None,
    keep_logs: bool | None,
    status_file: Path | None,
    completion_token: str | None,
    session_dir: Path | None,
    verbose: bool,
) -> None:
    """Run a coding agent in a loop until every task is verified done.

    Tasks come from `--task-file`, from the positional text, or from piped stdin.
    A markdown list (checkboxes, numbers or bullets) becomes one task per item;
    `[x]` items are already done.

    Exit codes: **0** all tasks done, **1** loop budget exhausted,
    **2** configuration error, **130** interrupted.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    stdin_text = None
    if task_file is None and not args and not sys.stdin.isatty():
        stdin_text = sys.stdin.read()

    try:
        result = LOOP_CONTROLLER.run(
            LoopRunCommand(
                args=args,
                agent=agent,
                task_file=task_file,
                stdin_text=stdin_text,
                max_loops=max_loops,
                keep_logs=keep_logs,
                status_file=status_file,
                completion_token=completion_token,
                session_dir=session_dir,
            ),
        )
    except (ValueError, AgentRunError) as error:
        raise ConfigurationError(str(error)) from error

    _emit_lines(result.lines)
    if result.exit_code != 0:
        sys.exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)
