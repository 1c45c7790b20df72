"""Main loop: drives the agent over the task queue until done or out of budget."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ralph_loop.audit import AuditLog
from ralph_loop.backend import AgentBackend, AgentRunError, AgentRunRequest, AgentRunResult
from ralph_loop.config import LoopSettings
from ralph_loop.contracts import (
    CONTEXT_FILE,
    ENVIRONMENT_FILE,
    ERROR_FILE,
    PROGRESS_FILE,
    TASK_FILE,
    StatusEvent,
    TranscriptEntry,
    write_status_event,
)
from ralph_loop.failure_classifier import classify_attempt_failure, completion_detected
from ralph_loop.sanitization import sanitize_preview
from ralph_loop.session import BASELINE_NOTE, Session, SessionState, prompt_hash, utc_now
from ralph_loop.tasks import Task
from ralph_loop.workdir import SessionWorkdirManager

logger = logging.getLogger(__name__)

EXIT_COMPLETE = 0
EXIT_EXHAUSTED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130
# Recorded as the exit code of an attempt whose agent process never started.
START_FAILURE_EXIT_CODE = -1

_EXIT_CODES = {
    SessionState.SUCCEEDED: EXIT_COMPLETE,
    SessionState.EXHAUSTED: EXIT_EXHAUSTED,
    SessionState.INTERRUPTED: EXIT_INTERRUPTED,
    SessionState.FAILED: EXIT_CONFIG_ERROR,
}

_STATUS_EVENTS = {
    SessionState.SUCCEEDED: "complete",
    SessionState.EXHAUSTED: "exhausted",
    SessionState.INTERRUPTED: "cancelled",
    SessionState.FAILED: "error",
}

_SLEEP_SLICE_SECONDS = 0.1


def build_prompt(*, session_dir: Path) -> str:
    """Prompt text shared by every attempt; only the referenced files change.

    The completion token never appears in the prompt text; agents read it from
    the task file.
    """

    return (
        "You are one run in an automated loop working through a task queue. You keep no\n"
        f"memory between runs except the files in {session_dir}/.\n"
        "\n"
        f"1. Read {session_dir}/{TASK_FILE}: the current task, completed tasks, rules and\n"
        "   the completion token.\n"
        f"2. Read {session_dir}/{PROGRESS_FILE} and {session_dir}/{ERROR_FILE}: earlier attempts\n"
        "   on this task and the full output of the last failure.\n"
        f"3. Read {session_dir}/{ENVIRONMENT_FILE} for facts outside version control and keep\n"
        "   it up to date. Nothing else will preserve them.\n"
        f"4. {session_dir}/{CONTEXT_FILE} holds a repository status snapshot.\n"
        "5. Do the current task and verify it. Only when it is verified complete, print\n"
        f"   the string from the Completion Token section of {session_dir}/{TASK_FILE}\n"
        "   on its own line.\n"
    )


@dataclass(slots=True)
class LoopOutcome:
    """Terminal summary for CLI reporting."""

    state: SessionState
    exit_code: int
    iterations: int
    completed: int
    total: int
    note: str


class LoopController:
    """Runs one attempt at a time against the current task of a session."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        session: Session,
        backend: AgentBackend,
        workdir: SessionWorkdirManager,
        audit: AuditLog,
        settings: LoopSettings,
        keep_logs: bool = False,
        status_file: Path | None = None,
        preview_chars: int = 240,
        cwd: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.backend = backend
        self.workdir = workdir
        self.audit = audit
        self.settings = settings
        self.keep_logs = keep_logs
        self.status_file = status_file
        self.preview_chars = preview_chars
        self.cwd = cwd
        self.clock = clock
        self.prompt = build_prompt(session_dir=workdir.root_dir)
        if session.completion_token in self.prompt:
            raise ValueError(
                f"Completion token {session.completion_token!r} occurs in the loop prompt; "
                "choose a more distinctive token.",
            )
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._mutation_note = BASELINE_NOTE

    def run(self) -> LoopOutcome:
        """Process the queue until success, budget exhaustion or interruption."""

        self.workdir.prepare(keep_logs=self.keep_logs)
        self.audit.start(keep_logs=self.keep_logs)
        self.audit.record(
            f"session start agent={self.session.agent} tasks={len(self.session.tasks)} "
            f"pending={len(self.session.tasks) - len(self.session.completed_tasks())} "
            f"budget={self.session.max_loops}",
        )

        with self._signal_handlers():
            while (
                not self._stop_requested
                and not self.session.is_finished
                and self.session.has_pending_tasks
                and self.session.budget_left
            ):
                self._run_iteration()

            if self._stop_requested:
                self._finalize(
                    SessionState.INTERRUPTED,
                    note=f"Interrupted by {self._stop_signal_name or 'signal'}.",
                )
            elif not self.session.has_pending_tasks:
                self._finalize(SessionState.SUCCEEDED, note="All tasks completed.")
            else:
                remaining = len(self.session.tasks) - len(self.session.completed_tasks())
                self._finalize(
                    SessionState.EXHAUSTED,
                    note=(
                        f"Loop budget of {self.session.max_loops} iterations exhausted "
                        f"with {remaining} task(s) incomplete."
                    ),
                )
        return self.outcome()

    def outcome(self) -> LoopOutcome:
        return LoopOutcome(
            state=self.session.state,
            exit_code=_EXIT_CODES.get(self.session.state, EXIT_EXHAUSTED),
            iterations=self.session.iteration,
            completed=len(self.session.completed_tasks()),
            total=len(self.session.tasks),
            note=self.session.finish_note or "",
        )

    def request_stop(self, *, signal_name: str) -> None:
        """Flag the loop to stop; the main loop writes the terminal record."""

        self._stop_requested = True
        self._stop_signal_name = signal_name

    def _run_iteration(self) -> None:
        session = self.session
        now = self.clock()
        task = session.begin_iteration(now)
        mutation_note = session.mutation_note()
        self._mutation_note = mutation_note
        self.workdir.materialize(session, mutation_note=mutation_note, now=now)

        label = self._label(task)
        self.audit.record(
            f"{label} start: {sanitize_preview(task.description, max_chars=self.preview_chars)}",
        )
        self.audit.record(f"{label} mutation: {mutation_note}")
        logger.info("%s: %s", label, mutation_note)
        self._emit_task_status("iteration_start", task)

        start_monotonic = time.monotonic()
        try:
            result = self.backend.run(
                AgentRunRequest(
                    agent=session.agent,
                    prompt=self.prompt,
                    iteration=session.iteration,
                    task_index=task.index,
                    task_attempt=task.attempts,
                    session_dir=self.workdir.root_dir,
                    cwd=self.cwd,
                    shutdown_requested=lambda: self._stop_requested,
                    graceful_shutdown_seconds=self.settings.graceful_shutdown_seconds,
                ),
            )
        except AgentRunError as error:
            self.audit.record(f"{label} agent error: {error}")
            result = AgentRunResult(
                exit_code=START_FAILURE_EXIT_CODE,
                stdout="",
                stderr=f"{error}\n",
                duration_ms=int((time.monotonic() - start_monotonic) * 1000),
            )
            if error.transient:
                logger.warning("%s: agent failed to start, will retry: %s", label, error)
                self._handle_failure(task, result, mutation_note=mutation_note)
                return
            logger.error("%s: %s", label, error)
            self._write_transcript(
                task,
                result,
                mutation_note=mutation_note,
                succeeded=False,
                signature=None,
            )
            self._finalize(SessionState.FAILED, note=str(error))
            return

        if result.interrupted:
            self._write_transcript(
                task,
                result,
                mutation_note=mutation_note,
                succeeded=False,
                signature=None,
            )
            self.audit.record(f"{label} interrupted after {result.duration_ms}ms")
            return

        if completion_detected(
            exit_code=result.exit_code,
            stdout=result.stdout,
            completion_token=session.completion_token,
        ):
            self._handle_success(task, result, mutation_note=mutation_note)
        else:
            self._handle_failure(task, result, mutation_note=mutation_note)

    def _handle_success(self, task: Task, result: AgentRunResult, *, mutation_note: str) -> None:
        label = self._label(task)
        self._write_transcript(
            task,
            result,
            mutation_note=mutation_note,
            succeeded=True,
            signature=None,
        )
        self.session.complete_current_task(self.clock())
        self.audit.record(
            f"{label} success: exit={result.exit_code} duration={result.duration_ms}ms "
            f"completed={len(self.session.completed_tasks())}/{len(self.session.tasks)}",
        )
        logger.info("%s: task completed in %d ms", label, result.duration_ms)
        self._emit_task_status("iteration_end", task, message="task completed")
        if self.session.has_pending_tasks and self.session.budget_left:
            self._pause(self.settings.success_pause_seconds)

    def _handle_failure(self, task: Task, result: AgentRunResult, *, mutation_note: str) -> None:
        label = self._label(task)
        now = self.clock()
        classification = classify_attempt_failure(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            completion_token=self.session.completion_token,
        )
        record = self.session.record_failure(
            classification=classification,
            prompt=self.prompt,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            mutation_note=mutation_note,
            now=now,
        )
        self.workdir.write_error(self.session, now=now)
        self.workdir.write_progress(self.session, mutation_note=mutation_note, now=now)
        self._write_transcript(
            task,
            result,
            mutation_note=mutation_note,
            succeeded=False,
            signature=record.signature,
        )
        self.audit.record(
            f"{label} failure: exit={result.exit_code} duration={result.duration_ms}ms "
            f"streak={record.streak} signature={record.signature}",
        )
        logger.warning(
            "%s: failed (%s, streak %d): %s",
            label,
            classification.kind.value,
            record.streak,
            sanitize_preview(record.signature, max_chars=self.preview_chars),
        )
        logger.debug("%s: classification %s", label, classification.to_event_details())
        self._emit_task_status("iteration_end", task, message=record.signature)
        if self.session.budget_left:
            self._pause(self.settings.retry_pause_seconds)

    def _write_transcript(
        self,
        task: Task,
        result: AgentRunResult,
        *,
        mutation_note: str,
        succeeded: bool,
        signature: str | None,
    ) -> None:
        self.workdir.write_transcript(
            TranscriptEntry(
                number=self.workdir.transcript_number(self.session.iteration),
                iteration=self.session.iteration,
                task_index=task.index,
                task_count=len(self.session.tasks),
                task_attempt=task.attempts,
                agent=self.session.agent,
                timestamp=self.clock(),
                prompt=self.prompt,
                prompt_hash=prompt_hash(self.prompt),
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
                succeeded=succeeded,
                signature=signature,
                mutation_note=mutation_note,
                stdout=result.stdout,
                stderr=result.stderr,
            ),
        )

    def _finalize(self, state: SessionState, *, note: str) -> None:
        now = self.clock()
        if not self.session.finish(state, note=note, now=now):
            return
        self.workdir.write_task(self.session, now=now)
        self.workdir.write_error(self.session, now=now)
        self.workdir.write_progress(self.session, mutation_note=self._mutation_note, now=now)
        self.audit.record(
            f"finish reason={state.value} iterations={self.session.iteration} "
            f"completed={len(self.session.completed_tasks())}/{len(self.session.tasks)}: {note}",
        )
        task = self.session.current_task
        self._emit_status(
            StatusEvent(
                event=_STATUS_EVENTS[state],
                iteration=self.session.iteration,
                agent=self.session.agent,
                task_index=task.index + 1 if task is not None else None,
                task_attempt=task.attempts if task is not None else None,
                message=note,
                exit_code=_EXIT_CODES[state],
                done_flag=state == SessionState.SUCCEEDED,
            ),
        )

    def _emit_task_status(self, event: str, task: Task, *, message: str | None = None) -> None:
        self._emit_status(
            StatusEvent(
                event=event,
                iteration=self.session.iteration,
                agent=self.session.agent,
                task_index=task.index + 1,
                task_attempt=task.attempts,
                message=message,
            ),
        )

    def _emit_status(self, event: StatusEvent) -> None:
        if self.status_file is None:
            return
        try:
            write_status_event(self.status_file, event)
        except OSError as error:
            logger.warning("Failed to write status file %s: %s", self.status_file, error)

    def _label(self, task: Task) -> str:
        return (
            f"[iter {self.session.iteration}/{self.session.max_loops}] "
            f"task {task.index + 1}/{len(self.session.tasks)} attempt {task.attempts}"
        )

    def _pause(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(_SLEEP_SLICE_SECONDS, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
