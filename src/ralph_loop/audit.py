"""Append-only, human-readable audit log of a loop session."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path

from ralph_loop.contracts import format_timestamp

logger = logging.getLogger(__name__)


class AuditLog:
    """Serializes writers with a lock so shutdown entries never interleave."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def start(self, *, keep_logs: bool) -> None:
        """Open a new run section, truncating earlier runs unless kept."""

        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                if not keep_logs:
                    self.path.write_text("", "utf-8")
            except OSError as error:
                logger.warning("Cannot reset audit log %s: %s", self.path, error)

    def record(self, message: str) -> None:
        line = f"{format_timestamp(datetime.now(tz=UTC))} {message}\n"
        with self._lock:
            try:
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
                    handle.flush()
            except OSError as error:
                logger.warning("Cannot append to audit log %s: %s", self.path, error)
