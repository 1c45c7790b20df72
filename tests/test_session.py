from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from ralph_loop.failure_classifier import classify_attempt_failure
from ralph_loop.session import BASELINE_NOTE, Session, SessionState, prompt_hash
from ralph_loop.tasks import TaskStatus, parse_tasks

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Session State"),
]

_NOW = datetime(2026, 5, 4, 12, 0, tzinfo=UTC)


def _session(text: str = "- [ ] one\n- [ ] two\n- [ ] three", *, max_loops: int = 10) -> Session:
    return Session(
        tasks=parse_tasks(text),
        agent="claude",
        max_loops=max_loops,
        completion_token="RALPH_DONE",
    )


def _fail(session: Session, stderr: str = "Error: build broke", *, minute: int = 0):
    classification = classify_attempt_failure(
        exit_code=1,
        stdout="",
        stderr=stderr,
        completion_token=session.completion_token,
    )
    return session.record_failure(
        classification=classification,
        prompt="prompt",
        exit_code=1,
        duration_ms=1500,
        mutation_note=session.mutation_note(),
        now=_NOW + timedelta(minutes=minute),
    )


def test_new_session_skips_completed_tasks() -> None:
    session = _session("- [x] done\n- [X] also done\n- [ ] open")

    assert session.current_index == 2
    assert session.current_task is not None
    assert session.current_task.description == "open"
    assert session.state == SessionState.IDLE


def test_fully_completed_input_has_no_pending_tasks() -> None:
    session = _session("- [x] done")

    assert not session.has_pending_tasks
    assert session.current_task is None


def test_begin_iteration_counts_globally_and_per_task() -> None:
    session = _session()

    task = session.begin_iteration(_NOW)

    assert session.state == SessionState.RUNNING
    assert session.started_at == _NOW
    assert session.iteration == 1
    assert task.attempts == 1
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.started_at == _NOW


def test_mutation_notes_follow_failure_history() -> None:
    session = _session()

    session.begin_iteration(_NOW)
    assert session.mutation_note() == BASELINE_NOTE
    _fail(session)

    session.begin_iteration(_NOW)
    assert session.mutation_note() == "Retry 1 after failure [exit 1: Error: build broke]."
    _fail(session)

    session.begin_iteration(_NOW)
    note = session.mutation_note()
    assert note.startswith("STUCK: the last 2 attempts failed with the same signature")
    assert "[exit 1: Error: build broke]" in note


def test_different_signature_restarts_streak() -> None:
    session = _session()

    session.begin_iteration(_NOW)
    first = _fail(session, "Error: build broke")
    session.begin_iteration(_NOW)
    second = _fail(session, "Error: build broke")
    session.begin_iteration(_NOW)
    third = _fail(session, "Error: tests broke")

    assert [first.streak, second.streak, third.streak] == [1, 2, 1]
    assert [record.attempt_no for record in session.attempts] == [1, 2, 3]
    assert [record.iteration for record in session.attempts] == [1, 2, 3]
    assert third.prompt_hash == prompt_hash("prompt")
    assert not session.failures.is_stuck


def test_completing_task_resets_attempts_and_advances() -> None:
    session = _session("- [ ] one\n- [x] two\n- [ ] three")

    session.begin_iteration(_NOW)
    _fail(session)
    session.begin_iteration(_NOW)
    completed = session.complete_current_task(_NOW)

    assert completed.status == TaskStatus.COMPLETED
    assert completed.completed_at == _NOW
    assert session.attempts == []
    assert session.failures.streak == 0
    assert session.current_task is not None
    assert session.current_task.description == "three"

    task = session.begin_iteration(_NOW)
    assert task.attempts == 1
    assert session.iteration == 3
    assert session.mutation_note() == BASELINE_NOTE


def test_budget_is_global_across_tasks() -> None:
    session = _session(max_loops=2)

    session.begin_iteration(_NOW)
    session.complete_current_task(_NOW)
    session.begin_iteration(_NOW)

    assert not session.budget_left
    assert session.has_pending_tasks


def test_finish_sets_terminal_state_only_once() -> None:
    session = _session()

    assert session.finish(SessionState.INTERRUPTED, note="Interrupted by SIGINT.", now=_NOW)
    assert not session.finish(SessionState.EXHAUSTED, note="late", now=_NOW)

    assert session.state == SessionState.INTERRUPTED
    assert session.finish_note == "Interrupted by SIGINT."
    assert session.is_finished


def test_finish_rejects_non_terminal_state() -> None:
    session = _session()

    with pytest.raises(ValueError, match="Not a terminal state"):
        session.finish(SessionState.RUNNING, note="", now=_NOW)


def test_begin_iteration_without_pending_task_raises() -> None:
    session = _session("- [x] done")

    with pytest.raises(RuntimeError, match="No pending task"):
        session.begin_iteration(_NOW)
