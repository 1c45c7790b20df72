"""Subprocess-based runner for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import IO, TextIO

from ralph_loop.backend.base import AgentRunRequest, AgentRunResult

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1
# Agents may leave background children holding the pipes open.
_PUMP_DRAIN_SECONDS = 5.0


class AgentRunError(RuntimeError):
    """Agent process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class UnknownToolError(ValueError):
    """Tool name has no entry in the tool table."""


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """How to invoke one agent CLI.

    ``command_template`` is a shell-like argument template. When
    ``prompt_via_stdin`` is false it must contain ``{prompt}``; otherwise the
    prompt is written to the process's standard input.
    """

    name: str
    command_template: str
    prompt_via_stdin: bool

    @classmethod
    def from_template(cls, name: str, command_template: str) -> ToolSpec:
        return cls(
            name=name,
            command_template=command_template,
            prompt_via_stdin="{prompt}" not in command_template,
        )


DEFAULT_TOOLS: Mapping[str, ToolSpec] = {
    "claude": ToolSpec("claude", "claude -p {prompt} --dangerously-skip-permissions", False),
    "gemini": ToolSpec("gemini", "gemini --yolo", True),
    "copilot": ToolSpec("copilot", "copilot -p {prompt} --allow-all-tools", False),
    "codex": ToolSpec(
        "codex",
        "codex exec --dangerously-bypass-approvals-and-sandbox {prompt}",
        False,
    ),
    "opencode": ToolSpec("opencode", "opencode run {prompt}", False),
}


def build_tool_table(overrides: Mapping[str, str] | None = None) -> dict[str, ToolSpec]:
    """Default tool table with per-tool command overrides applied."""

    tools = dict(DEFAULT_TOOLS)
    for name, template in (overrides or {}).items():
        tools[name.lower()] = ToolSpec.from_template(name.lower(), template)
    return tools


def build_agent_env(request: AgentRunRequest) -> dict[str, str]:
    env = os.environ.copy()
    env["RALPH_LOOP_AGENT"] = request.agent
    env["RALPH_LOOP_ITERATION"] = str(request.iteration)
    env["RALPH_LOOP_TASK_INDEX"] = str(request.task_index + 1)
    env["RALPH_LOOP_TASK_ATTEMPT"] = str(request.task_attempt)
    env["RALPH_LOOP_NONINTERACTIVE"] = "1"
    env["CI"] = "1"
    if request.session_dir is not None:
        env["RALPH_LOOP_SESSION_DIR"] = str(request.session_dir)
    return env


def build_run_args(spec: ToolSpec, *, prompt: str) -> list[str]:
    stripped = spec.command_template.strip()
    if not stripped:
        raise UnknownToolError(f"Command template for tool {spec.name!r} is empty.")
    if not spec.prompt_via_stdin and "{prompt}" not in stripped:
        raise UnknownToolError(
            f"Command template for tool {spec.name!r} must include {{prompt}}.",
        )
    try:
        rendered = stripped.format(prompt=shlex.quote(prompt))
    except (KeyError, IndexError, ValueError) as error:
        raise UnknownToolError(
            f"Unsupported placeholder in command template for tool {spec.name!r}: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise UnknownToolError(f"Command template for tool {spec.name!r} rendered empty.")
    return argv


class CliAgentBackend:
    """Runs one agent attempt, capturing and live-streaming stdout and stderr."""

    def __init__(
        self,
        tools: Mapping[str, ToolSpec] | None = None,
        *,
        stream_output: bool = True,
    ) -> None:
        self.tools = dict(tools) if tools is not None else dict(DEFAULT_TOOLS)
        self.stream_output = stream_output

    def resolve(self, agent: str) -> ToolSpec:
        spec = self.tools.get(agent.strip().lower())
        if spec is None:
            known = ", ".join(sorted(self.tools))
            raise UnknownToolError(f"Unknown agent tool {agent!r}. Known tools: {known}.")
        return spec

    def preflight(self, agent: str) -> str:
        """Validate the tool entry and return the resolved executable path."""

        spec = self.resolve(agent)
        argv = build_run_args(spec, prompt="preflight")
        resolved = shutil.which(argv[0])
        if resolved is None:
            raise AgentRunError(f"Executable not found in PATH: {argv[0]}", transient=False)
        return resolved

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        spec = self.resolve(request.agent)
        argv = build_run_args(spec, prompt=request.prompt)
        env = build_agent_env(request)

        start_monotonic = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.PIPE if spec.prompt_via_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                cwd=request.cwd,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise AgentRunError(f"Agent command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}", transient=True) from error

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        threads = [
            _start_pump(process.stdout, stdout_chunks, self._echo_target(sys.stdout)),
            _start_pump(process.stderr, stderr_chunks, self._echo_target(sys.stderr)),
        ]
        if spec.prompt_via_stdin:
            threads.append(_start_feeder(process.stdin, request.prompt))

        exit_code, interrupted = _wait_with_shutdown(
            process,
            shutdown_requested=request.shutdown_requested,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
        )
        for thread in threads:
            thread.join(timeout=_PUMP_DRAIN_SECONDS)
            if thread.is_alive():
                logger.warning("Agent output pipe still open after exit; continuing without it.")

        return AgentRunResult(
            exit_code=exit_code,
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
            duration_ms=int((time.monotonic() - start_monotonic) * 1000),
            interrupted=interrupted,
        )

    def _echo_target(self, stream: TextIO) -> TextIO | None:
        return stream if self.stream_output else None


def _start_pump(stream: IO[str] | None, chunks: list[str], echo: TextIO | None) -> threading.Thread:
    thread = threading.Thread(target=_pump, args=(stream, chunks, echo), daemon=True)
    thread.start()
    return thread


def _pump(stream: IO[str] | None, chunks: list[str], echo: TextIO | None) -> None:
    if stream is None:
        return
    with stream:
        for line in iter(stream.readline, ""):
            chunks.append(line)
            if echo is None:
                continue
            try:
                echo.write(line)
                echo.flush()
            except (OSError, ValueError) as error:
                logger.debug("Live output echo disabled: %s", error)
                echo = None


def _start_feeder(stream: IO[str] | None, prompt: str) -> threading.Thread:
    thread = threading.Thread(target=_feed, args=(stream, prompt), daemon=True)
    thread.start()
    return thread


def _feed(stream: IO[str] | None, prompt: str) -> None:
    if stream is None:
        return
    try:
        stream.write(prompt)
        stream.close()
    except (BrokenPipeError, ValueError, OSError) as error:
        logger.debug("Agent closed stdin before reading the full prompt: %s", error)


def _wait_with_shutdown(
    process: subprocess.Popen[str],
    *,
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: float,
) -> tuple[int, bool]:
    shutdown_deadline: float | None = None
    graceful_seconds = max(0.0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, shutdown_deadline is not None

        if shutdown_requested is not None and shutdown_requested():
            now = time.monotonic()
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return process.returncode if process.returncode is not None else -15, True

        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
