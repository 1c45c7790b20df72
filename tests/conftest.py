"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys

import pytest

from ralph_loop.backend import CliAgentBackend, ToolSpec
from ralph_loop.config import LoopSettings

STUB_TOOL = "stub"


def stub_agent_template(mode: str, *, via_stdin: bool = False, extra: str = "") -> str:
    """Command template that runs the bundled stub agent with the current interpreter."""

    head = f"{shlex.quote(sys.executable)} -m ralph_loop.backend.stub_agent --mode {mode}"
    if extra:
        head = f"{head} {extra}"
    return head if via_stdin else f"{head} {{prompt}}"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop RALPH_LOOP_* variables inherited from the developer shell."""
    for name in list(os.environ):
        if name.startswith("RALPH_LOOP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fast_loop_settings() -> LoopSettings:
    return LoopSettings(
        max_loops=10,
        success_pause_seconds=0.0,
        retry_pause_seconds=0.0,
        graceful_shutdown_seconds=0.0,
    )


@pytest.fixture()
def stub_backend_factory():
    """Build a quiet CLI backend whose only tool is the stub agent in a given mode."""

    def _factory(mode: str, *, via_stdin: bool = False, extra: str = "") -> CliAgentBackend:
        spec = ToolSpec.from_template(
            STUB_TOOL,
            stub_agent_template(mode, via_stdin=via_stdin, extra=extra),
        )
        return CliAgentBackend({STUB_TOOL: spec}, stream_output=False)

    return _factory


@pytest.fixture()
def stub_env(monkeypatch):
    """Register the stub agent as a tool through the environment, with no pauses."""

    def _apply(mode: str, *, extra: str = "") -> None:
        monkeypatch.setenv("RALPH_LOOP_STUB_COMMAND", stub_agent_template(mode, extra=extra))
        monkeypatch.setenv("RALPH_LOOP_SUCCESS_PAUSE_SECONDS", "0")
        monkeypatch.setenv("RALPH_LOOP_RETRY_PAUSE_SECONDS", "0")
        monkeypatch.setenv("RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS", "0")

    return _apply
