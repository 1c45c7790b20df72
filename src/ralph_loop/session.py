"""Session aggregate: the single owner of task, attempt and failure state."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from ralph_loop.failure_classifier import FailureClassification, FailureTracker
from ralph_loop.tasks import Task, TaskStatus

BASELINE_NOTE = "Baseline"
PROMPT_HASH_CHARS = 12


class SessionState(str, Enum):
    """Controller lifecycle; the last four are terminal."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    INTERRUPTED = "interrupted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in {SessionState.IDLE, SessionState.RUNNING}


@dataclass(slots=True)
class AttemptRecord:
    """One failed attempt of the in-progress task."""

    attempt_no: int
    iteration: int
    timestamp: datetime
    prompt: str
    prompt_hash: str
    exit_code: int
    duration_ms: int
    signature: str
    context: str
    mutation_note: str
    streak: int


@dataclass(slots=True)
class Session:
    """Aggregate root for one run over a task queue."""

    tasks: list[Task]
    agent: str
    max_loops: int
    completion_token: str
    current_index: int = 0
    iteration: int = 0
    attempts: list[AttemptRecord] = field(default_factory=list)
    failures: FailureTracker = field(default_factory=FailureTracker)
    state: SessionState = SessionState.IDLE
    started_at: datetime | None = None
    finish_note: str | None = None
    finished_at: datetime | None = None

    def __post_init__(self) -> None:
        self._skip_completed()

    @property
    def current_task(self) -> Task | None:
        if self.current_index >= len(self.tasks):
            return None
        return self.tasks[self.current_index]

    @property
    def has_pending_tasks(self) -> bool:
        return self.current_index < len(self.tasks)

    @property
    def budget_left(self) -> bool:
        return self.iteration < self.max_loops

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal

    def completed_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.status == TaskStatus.COMPLETED]

    def begin_iteration(self, now: datetime) -> Task:
        """Advance the global counter and open one attempt on the current task."""

        task = self.current_task
        if task is None:
            raise RuntimeError("No pending task to attempt.")
        if self.state == SessionState.IDLE:
            self.state = SessionState.RUNNING
            self.started_at = now
        self.iteration += 1
        if task.is_new:
            task.start(now)
        task.begin_attempt()
        return task

    def mutation_note(self) -> str:
        """Describe how the upcoming attempt differs from the previous one."""

        task = self.current_task
        if task is None or task.attempts <= 1:
            return BASELINE_NOTE
        signature = self.failures.last_signature
        if signature is None:
            return f"Retry {task.attempts - 1} (previous attempt recorded no failure)."
        if self.failures.is_stuck:
            return (
                f"STUCK: the last {self.failures.streak} attempts failed with the same "
                f"signature [{signature}]. Change strategy instead of repeating it."
            )
        return f"Retry {task.attempts - 1} after failure [{signature}]."

    def record_failure(  # noqa: PLR0913
        self,
        *,
        classification: FailureClassification,
        prompt: str,
        exit_code: int,
        duration_ms: int,
        mutation_note: str,
        now: datetime,
    ) -> AttemptRecord:
        task = self.current_task
        if task is None:
            raise RuntimeError("Cannot record a failure without a current task.")
        streak = self.failures.record(classification.signature, classification.context)
        record = AttemptRecord(
            attempt_no=task.attempts,
            iteration=self.iteration,
            timestamp=now,
            prompt=prompt,
            prompt_hash=prompt_hash(prompt),
            exit_code=exit_code,
            duration_ms=duration_ms,
            signature=classification.signature,
            context=classification.context,
            mutation_note=mutation_note,
            streak=streak,
        )
        self.attempts.append(record)
        return record

    def complete_current_task(self, now: datetime) -> Task:
        task = self.current_task
        if task is None:
            raise RuntimeError("No current task to complete.")
        task.complete(now)
        self.attempts.clear()
        self.failures.reset()
        self.current_index += 1
        self._skip_completed()
        return task

    def finish(self, state: SessionState, *, note: str, now: datetime) -> bool:
        """Set terminal state once; later calls are ignored and return False."""

        if not state.is_terminal:
            raise ValueError(f"Not a terminal state: {state.value}")
        if self.is_finished:
            return False
        self.state = state
        self.finish_note = note
        self.finished_at = now
        return True

    def _skip_completed(self) -> None:
        while (
            self.current_index < len(self.tasks)
            and self.tasks[self.current_index].status == TaskStatus.COMPLETED
        ):
            self.current_index += 1


def prompt_hash(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:PROMPT_HASH_CHARS]


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)
