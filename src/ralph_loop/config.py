"""Runtime configuration for the agent loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMPLETION_TOKEN = "RALPH_DONE"


@dataclass(slots=True)
class LoopSettings:
    """Outer loop budget and pacing."""

    max_loops: int = 50
    success_pause_seconds: float = 1.0
    retry_pause_seconds: float = 2.0
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class AgentSettings:
    """Which tool to invoke and how it signals completion."""

    default_agent: str = "claude"
    completion_token: str = DEFAULT_COMPLETION_TOKEN
    command_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SessionSettings:
    """On-disk session layout and log retention."""

    session_dir: Path = Path(".ralph")
    audit_log_path: Path = Path("ralph.log")
    status_file_path: Path | None = None
    keep_logs: bool = False
    git_diff_stat_max_chars: int = 2_000
    preview_chars: int = 240


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    loop: LoopSettings = field(default_factory=LoopSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    session: SessionSettings = field(default_factory=SessionSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suited to an interactive shell."""

        status_file = os.getenv("RALPH_LOOP_STATUS_FILE", "").strip()
        return cls(
            loop=LoopSettings(
                max_loops=int(os.getenv("RALPH_LOOP_MAX_LOOPS", "50")),
                success_pause_seconds=float(
                    os.getenv("RALPH_LOOP_SUCCESS_PAUSE_SECONDS", "1.0"),
                ),
                retry_pause_seconds=float(os.getenv("RALPH_LOOP_RETRY_PAUSE_SECONDS", "2.0")),
                graceful_shutdown_seconds=float(
                    os.getenv("RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
            ),
            agent=AgentSettings(
                default_agent=os.getenv("RALPH_LOOP_AGENT", "claude").strip().lower(),
                completion_token=os.getenv(
                    "RALPH_LOOP_COMPLETION_TOKEN",
                    DEFAULT_COMPLETION_TOKEN,
                ),
                command_overrides=_collect_command_overrides(),
            ),
            session=SessionSettings(
                session_dir=Path(os.getenv("RALPH_LOOP_SESSION_DIR", ".ralph")),
                audit_log_path=Path(os.getenv("RALPH_LOOP_AUDIT_LOG", "ralph.log")),
                status_file_path=Path(status_file) if status_file else None,
                keep_logs=_env_bool("RALPH_LOOP_KEEP_LOGS", default=False),
                git_diff_stat_max_chars=int(
                    os.getenv("RALPH_LOOP_GIT_DIFF_STAT_MAX_CHARS", "2000"),
                ),
                preview_chars=int(os.getenv("RALPH_LOOP_PREVIEW_CHARS", "240")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loop cannot run with."""

        if self.loop.max_loops <= 0:
            raise ValueError("RALPH_LOOP_MAX_LOOPS must be a positive integer.")
        if self.loop.success_pause_seconds < 0:
            raise ValueError("RALPH_LOOP_SUCCESS_PAUSE_SECONDS must be >= 0.")
        if self.loop.retry_pause_seconds < 0:
            raise ValueError("RALPH_LOOP_RETRY_PAUSE_SECONDS must be >= 0.")
        if self.loop.graceful_shutdown_seconds < 0:
            raise ValueError("RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        token = self.agent.completion_token
        if not token.strip() or token != token.strip() or "\n" in token:
            raise ValueError(
                "RALPH_LOOP_COMPLETION_TOKEN must be a non-empty single-line string "
                "without surrounding whitespace.",
            )
        if self.session.git_diff_stat_max_chars <= 0:
            raise ValueError("RALPH_LOOP_GIT_DIFF_STAT_MAX_CHARS must be > 0.")
        if self.session.preview_chars <= 0:
            raise ValueError("RALPH_LOOP_PREVIEW_CHARS must be > 0.")
        if self.session.session_dir == Path():
            raise ValueError("RALPH_LOOP_SESSION_DIR must not be the working directory itself.")
        for tool, template in self.agent.command_overrides.items():
            if not template.strip():
                raise ValueError(f"Empty command override for tool={tool!r}")


def _collect_command_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for name, value in os.environ.items():
        if not name.startswith("RALPH_LOOP_") or not name.endswith("_COMMAND"):
            continue
        tool = name.removeprefix("RALPH_LOOP_").removesuffix("_COMMAND").strip().lower()
        if not tool:
            continue
        overrides[tool] = value
    return overrides


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
