"""Backend interface for one agent attempt."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one attempt."""

    agent: str
    prompt: str
    iteration: int
    task_index: int
    task_attempt: int
    session_dir: Path | None = None
    cwd: Path | None = None
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class AgentRunResult:
    """Captured outcome of one agent process."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    interrupted: bool = False


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run one attempt and return captured output."""
