"""Session directory materialization: the agent's file-based memory."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ralph_loop.contracts import (
    ATTEMPTS_DIR,
    CONTEXT_FILE,
    ENVIRONMENT_FILE,
    ERROR_FILE,
    PROGRESS_FILE,
    TASK_FILE,
    GitSnapshot,
    TranscriptEntry,
    render_context_file,
    render_environment_template,
    render_error_file,
    render_progress_file,
    render_task_file,
    render_transcript,
    transcript_name,
)
from ralph_loop.session import Session

logger = logging.getLogger(__name__)

_TRANSCRIPT_RE = re.compile(r"^attempt-(\d+)\.log$")


@dataclass(slots=True)
class SessionPaths:
    """Fixed file layout inside the session directory."""

    root: Path
    task: Path
    progress: Path
    error: Path
    context: Path
    environment: Path
    attempts: Path

    @classmethod
    def under(cls, root: Path) -> SessionPaths:
        return cls(
            root=root,
            task=root / TASK_FILE,
            progress=root / PROGRESS_FILE,
            error=root / ERROR_FILE,
            context=root / CONTEXT_FILE,
            environment=root / ENVIRONMENT_FILE,
            attempts=root / ATTEMPTS_DIR,
        )


class SessionWorkdirManager:
    """Writes memory files for the agent.

    All files except the environment-state file are controller-owned and
    rewritten on every attempt. The environment-state file is created from a
    template when missing and never written again. Every write is best effort:
    failures are logged and the loop continues on in-memory state.
    """

    def __init__(
        self,
        root_dir: Path,
        *,
        snapshot_provider: Callable[[], GitSnapshot] | None = None,
    ) -> None:
        self.paths = SessionPaths.under(root_dir)
        self.snapshot_provider = snapshot_provider
        self._transcript_offset = 0

    @property
    def root_dir(self) -> Path:
        return self.paths.root

    def prepare(self, *, keep_logs: bool) -> None:
        """Create the layout and apply log retention to earlier transcripts."""

        try:
            self.paths.attempts.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            logger.warning("Cannot create session directory %s: %s", self.paths.root, error)
            return

        existing = self._existing_transcripts()
        if keep_logs:
            self._transcript_offset = max(existing, default=0)
            return

        for number in existing:
            path = self.paths.attempts / transcript_name(number)
            try:
                path.unlink()
            except OSError as error:
                logger.warning("Cannot remove old transcript %s: %s", path, error)
        self._transcript_offset = 0

    def transcript_number(self, iteration: int) -> int:
        return self._transcript_offset + iteration

    def materialize(self, session: Session, *, mutation_note: str, now: datetime) -> None:
        """Write the full memory set the agent reads at the start of an attempt."""

        self.ensure_environment_file()
        self.write_task(session, now=now)
        self.write_progress(session, mutation_note=mutation_note, now=now)
        self.write_error(session, now=now)
        self.write_context(now=now)

    def write_progress(self, session: Session, *, mutation_note: str, now: datetime) -> bool:
        return self._write(
            self.paths.progress,
            render_progress_file(session, mutation_note=mutation_note, updated_at=now),
        )

    def write_task(self, session: Session, *, now: datetime) -> bool:
        return self._write(self.paths.task, render_task_file(session, updated_at=now))

    def write_error(self, session: Session, *, now: datetime) -> bool:
        return self._write(self.paths.error, render_error_file(session, updated_at=now))

    def write_context(self, *, now: datetime) -> bool:
        snapshot = (
            self.snapshot_provider()
            if self.snapshot_provider is not None
            else GitSnapshot(available=False, error="snapshot disabled")
        )
        return self._write(self.paths.context, render_context_file(snapshot, updated_at=now))

    def ensure_environment_file(self) -> bool:
        """Create the agent-owned environment file if absent. Returns True when created."""

        path = self.paths.environment
        if path.exists():
            return False
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("x", encoding="utf-8") as handle:
                handle.write(render_environment_template())
        except FileExistsError:
            return False
        except OSError as error:
            logger.warning("Cannot create environment file %s: %s", path, error)
            return False
        return True

    def write_transcript(self, entry: TranscriptEntry) -> Path | None:
        """Persist one attempt transcript. Existing transcripts are never replaced."""

        path = self.paths.attempts / transcript_name(entry.number)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("x", encoding="utf-8") as handle:
                handle.write(render_transcript(entry))
        except OSError as error:
            logger.warning("Cannot write transcript %s: %s", path, error)
            return None
        return path

    def _existing_transcripts(self) -> list[int]:
        numbers: list[int] = []
        try:
            entries = list(self.paths.attempts.iterdir())
        except OSError:
            return numbers
        for entry in entries:
            match = _TRANSCRIPT_RE.match(entry.name)
            if match is not None and entry.is_file():
                numbers.append(int(match.group(1)))
        return sorted(numbers)

    def _write(self, path: Path, content: str) -> bool:
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(content, "utf-8")
            os.replace(tmp_path, path)
        except OSError as error:
            logger.warning("Cannot write session file %s: %s", path, error)
            return False
        return True
