"""Controller for the loop CLI command."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path

from ralph_loop.audit import AuditLog
from ralph_loop.backend import CliAgentBackend, build_tool_table
from ralph_loop.config import Settings
from ralph_loop.git_context import collect_git_snapshot
from ralph_loop.loop import LoopController, LoopOutcome
from ralph_loop.session import Session
from ralph_loop.tasks import TaskInputError, parse_tasks
from ralph_loop.workdir import SessionWorkdirManager


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for one loop session."""

    args: tuple[str, ...]
    agent: str | None = None
    task_file: Path | None = None
    stdin_text: str | None = None
    max_loops: int | None = None
    keep_logs: bool | None = None
    status_file: Path | None = None
    completion_token: str | None = None
    session_dir: Path | None = None


@dataclass(slots=True)
class LoopRunResult:
    """Lines to print plus the process exit code."""

    lines: list[str]
    exit_code: int
    outcome: LoopOutcome


class LoopCliController:
    """Builds settings, tasks and collaborators, then runs the loop.

    Configuration problems surface as ``ValueError`` subclasses (or a
    non-transient ``AgentRunError`` from the preflight) before any task runs.
    """

    def run(self, command: LoopRunCommand) -> LoopRunResult:
        settings = self._settings(command)
        backend = CliAgentBackend(build_tool_table(settings.agent.command_overrides))

        agent, task_args = resolve_agent_and_task_args(
            agent_option=command.agent,
            args=command.args,
            known_tools=set(backend.tools),
            default_agent=settings.agent.default_agent,
        )
        tasks = parse_tasks(
            read_task_text(
                task_file=command.task_file,
                task_args=task_args,
                stdin_text=command.stdin_text,
            ),
        )
        backend.preflight(agent)

        cwd = Path.cwd()
        session = Session(
            tasks=tasks,
            agent=backend.resolve(agent).name,
            max_loops=settings.loop.max_loops,
            completion_token=settings.agent.completion_token,
        )
        workdir = SessionWorkdirManager(
            settings.session.session_dir,
            snapshot_provider=partial(
                collect_git_snapshot,
                cwd=cwd,
                diff_stat_max_chars=settings.session.git_diff_stat_max_chars,
            ),
        )
        controller = LoopController(
            session=session,
            backend=backend,
            workdir=workdir,
            audit=AuditLog(settings.session.audit_log_path),
            settings=settings.loop,
            keep_logs=settings.session.keep_logs,
            status_file=settings.session.status_file_path,
            preview_chars=settings.session.preview_chars,
            cwd=cwd,
        )
        outcome = controller.run()

        lines = [
            f"Finished: {outcome.state.value} "
            f"({outcome.completed}/{outcome.total} tasks, {outcome.iterations} iterations).",
            outcome.note,
            f"Session files: {workdir.root_dir}",
            f"Audit log: {settings.session.audit_log_path}",
        ]
        return LoopRunResult(lines=lines, exit_code=outcome.exit_code, outcome=outcome)

    def _settings(self, command: LoopRunCommand) -> Settings:
        settings = Settings.from_env()
        if command.max_loops is not None:
            settings.loop.max_loops = command.max_loops
        if command.keep_logs is not None:
            settings.session.keep_logs = command.keep_logs
        if command.status_file is not None:
            settings.session.status_file_path = command.status_file
        if command.completion_token is not None:
            settings.agent.completion_token = command.completion_token
        if command.session_dir is not None:
            settings.session.session_dir = command.session_dir
        settings.validate()
        return settings


def resolve_agent_and_task_args(
    *,
    agent_option: str | None,
    args: tuple[str, ...],
    known_tools: set[str],
    default_agent: str,
) -> tuple[str, tuple[str, ...]]:
    """Pick the tool from ``--agent`` or a leading positional tool name."""

    if agent_option is not None:
        return agent_option.strip().lower(), args
    if args and args[0].strip().lower() in known_tools:
        return args[0].strip().lower(), args[1:]
    return default_agent, args


def read_task_text(
    *,
    task_file: Path | None,
    task_args: tuple[str, ...],
    stdin_text: str | None,
) -> str:
    """Task input precedence: task file, positional arguments, piped stdin."""

    if task_file is not None:
        try:
            return task_file.read_text("utf-8")
        except OSError as error:
            raise TaskInputError(f"Cannot read task file {task_file}: {error}") from error
    if task_args:
        return " ".join(task_args)
    if stdin_text is not None:
        return stdin_text
    raise TaskInputError(
        "No tasks given: pass them as arguments, with --task-file, or pipe them on stdin.",
    )
