"""Task queue model parsed from free-form task input."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

_CHECKBOX_RE = re.compile(r"^[-*]\s+\[(?P<mark>[ xX])\]\s*(?P<text>.*)$")
_NUMBERED_RE = re.compile(r"^\d+[.)]\s+(?P<text>.*)$")
_BULLET_RE = re.compile(r"^[-*]\s+(?P<text>.*)$")


class TaskInputError(ValueError):
    """Task input produced no tasks."""


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(slots=True)
class Task:
    """One queued unit of work for the agent."""

    index: int
    description: str
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: int = 0

    @property
    def is_new(self) -> bool:
        return self.status == TaskStatus.PENDING and self.attempts == 0

    def start(self, now: datetime) -> None:
        """Mark the task in progress, stamping the start time once."""

        self.status = TaskStatus.IN_PROGRESS
        if self.started_at is None:
            self.started_at = now

    def begin_attempt(self) -> int:
        self.attempts += 1
        return self.attempts

    def complete(self, now: datetime) -> None:
        self.status = TaskStatus.COMPLETED
        self.completed_at = now


def parse_tasks(text: str) -> list[Task]:
    """Split raw multi-line input into ordered tasks.

    Each non-blank line becomes one task. Checkbox items (``- [ ]`` / ``- [x]``)
    carry their completion state; numbered and bullet markers are stripped;
    anything else is taken verbatim after trimming.
    """

    tasks: list[Task] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        description, completed = _parse_line(line)
        tasks.append(
            Task(
                index=len(tasks),
                description=description,
                status=TaskStatus.COMPLETED if completed else TaskStatus.PENDING,
            ),
        )

    if not tasks:
        raise TaskInputError("Task input is empty: provide at least one non-blank line.")
    return tasks


def _parse_line(line: str) -> tuple[str, bool]:
    match = _CHECKBOX_RE.match(line)
    if match is not None:
        return _text_or_line(match, line), match.group("mark") in {"x", "X"}

    match = _NUMBERED_RE.match(line) or _BULLET_RE.match(line)
    if match is not None:
        return _text_or_line(match, line), False

    return line, False


def _text_or_line(match: re.Match[str], line: str) -> str:
    text = match.group("text").strip()
    return text or line
