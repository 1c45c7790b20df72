"""File contracts shared with the agent: memory files, transcripts and status events.

Every controller-owned memory file starts with a schema marker line so the
agent (and humans) can tell which layout they are reading.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ralph_loop.session import Session

CONTRACT_VERSION = 1

TASK_FILE = "TASK.md"
PROGRESS_FILE = "PROGRESS.md"
ERROR_FILE = "ERROR.md"
CONTEXT_FILE = "CONTEXT.md"
ENVIRONMENT_FILE = "ENVIRONMENT.md"
ATTEMPTS_DIR = "attempts"

NO_ERROR_MARKER = "NONE"
UPDATED_PREFIX = "Updated: "

_TABLE_SIGNATURE_CHARS = 80


@dataclass(slots=True)
class GitSnapshot:
    """Best-effort repository status for the context file."""

    available: bool
    status: str = ""
    diff_stat: str = ""
    error: str | None = None


@dataclass(slots=True)
class TranscriptEntry:
    """Everything needed to reproduce one attempt, success or failure."""

    number: int
    iteration: int
    task_index: int
    task_count: int
    task_attempt: int
    agent: str
    timestamp: datetime
    prompt: str
    prompt_hash: str
    exit_code: int
    duration_ms: int
    succeeded: bool
    signature: str | None
    mutation_note: str
    stdout: str
    stderr: str


@dataclass(slots=True)
class StatusEvent:
    """Machine-readable status update for script integration."""

    event: str
    iteration: int
    agent: str
    task_index: int | None = None
    task_attempt: int | None = None
    message: str | None = None
    exit_code: int | None = None
    done_flag: bool = False
    timestamp: str = ""


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def transcript_name(number: int) -> str:
    return f"attempt-{number:04d}.log"


def render_task_file(session: Session, *, updated_at: datetime) -> str:
    task = session.current_task
    lines = [
        _marker("task"),
        "# Current Task",
        "",
        f"{UPDATED_PREFIX}{format_timestamp(updated_at)}",
    ]
    if task is None:
        lines.extend(["", "All tasks are complete. There is nothing left to do."])
    else:
        lines.extend(
            [
                f"Task {task.index + 1} of {len(session.tasks)}",
                "",
                "## Task",
                "",
                task.description,
            ],
        )

    lines.extend(["", "## Completed Tasks", ""])
    completed = session.completed_tasks()
    if completed:
        lines.extend(f"- [x] {done.index + 1}. {done.description}" for done in completed)
    else:
        lines.append("None yet.")

    lines.extend(
        [
            "",
            "## Rules",
            "",
            "1. Work on the current task only. Completed tasks are listed for context.",
            f"2. Read {PROGRESS_FILE} and {ERROR_FILE} first. If {ERROR_FILE} is not "
            f"{NO_ERROR_MARKER}, the previous attempt failed: fix that cause first.",
            f"3. Keep facts that version control does not capture (running processes, "
            f"open sessions, ports) in {ENVIRONMENT_FILE}. The loop never overwrites it.",
            "4. Verify the result (build, tests, manual check) before declaring completion.",
            "5. Print the completion token only when the current task is verified complete. "
            "Never print it to end an attempt early.",
            "",
            "## Completion Token",
            "",
            "Print this exact string on its own line in your final output:",
            "",
            session.completion_token,
            "",
        ],
    )
    return "\n".join(lines)


def render_progress_file(session: Session, *, mutation_note: str, updated_at: datetime) -> str:
    task = session.current_task
    lines = [
        _marker("progress"),
        "# Progress",
        "",
        f"{UPDATED_PREFIX}{format_timestamp(updated_at)}",
        f"Agent: {session.agent}",
        f"Iteration: {session.iteration} / {session.max_loops}",
        f"Completed: {len(session.completed_tasks())} / {len(session.tasks)}",
        f"State: {session.state.value}",
    ]
    if task is not None:
        lines.extend(
            [
                f"Task: {task.index + 1} / {len(session.tasks)} (attempt {task.attempts})",
                f"Mutation: {mutation_note}",
                f"Current task: {task.description}",
            ],
        )
    if session.finish_note is not None:
        lines.append(f"Finish: {session.finish_note}")

    lines.extend(["", "## Attempts", ""])
    if session.attempts:
        lines.extend(["| # | Exit | Duration | Signature |", "|---|------|----------|-----------|"])
        lines.extend(
            f"| {record.attempt_no} | {record.exit_code} | "
            f"{record.duration_ms / 1000:.2f}s | {_table_cell(record.signature)} |"
            for record in session.attempts
        )
    else:
        lines.append("No failed attempts for the current task.")

    lines.extend(
        [
            "",
            "## Next Plan",
            "",
            "_Fill in before you start: what you will try in this attempt, and why it "
            "differs from the failed attempts above._",
            "",
        ],
    )
    return "\n".join(lines)


def render_error_file(session: Session, *, updated_at: datetime) -> str:
    lines = [
        _marker("error"),
        "# Last Error",
        "",
        f"{UPDATED_PREFIX}{format_timestamp(updated_at)}",
    ]
    if not session.attempts or session.failures.last_context is None:
        lines.extend(["", NO_ERROR_MARKER, ""])
        return "\n".join(lines)

    last = session.attempts[-1]
    lines.extend(
        [
            f"Attempt: {last.attempt_no}",
            f"Exit code: {last.exit_code}",
            f"Signature: {last.signature}",
            f"Repeat streak: {session.failures.streak}",
            "",
            "## Diagnostic Context",
            "",
            session.failures.last_context,
            "",
        ],
    )
    return "\n".join(lines)


def render_context_file(snapshot: GitSnapshot, *, updated_at: datetime) -> str:
    lines = [
        _marker("context"),
        "# Repository Context",
        "",
        f"{UPDATED_PREFIX}{format_timestamp(updated_at)}",
        "Informational snapshot only; inspect the repository for authoritative state.",
        "",
    ]
    if not snapshot.available:
        lines.extend([f"Repository status unavailable: {snapshot.error or 'unknown'}", ""])
        return "\n".join(lines)

    lines.extend(
        [
            "## Status",
            "",
            "```",
            snapshot.status.rstrip() or "(clean)",
            "```",
            "",
            "## Diff Stat",
            "",
            "```",
            snapshot.diff_stat.rstrip() or "(no changes)",
            "```",
            "",
        ],
    )
    return "\n".join(lines)


def render_environment_template() -> str:
    return "\n".join(
        [
            _marker("environment"),
            "# Environment State",
            "",
            "This file belongs to the agent. The loop creates it once and never rewrites it.",
            "Record anything a later attempt needs that version control does not capture.",
            "",
            "## Running Processes",
            "",
            "- none recorded",
            "",
            "## Open Sessions",
            "",
            "- none recorded",
            "",
            "## Ports",
            "",
            "- none recorded",
            "",
            "## Notes",
            "",
        ],
    )


def render_transcript(entry: TranscriptEntry) -> str:
    header = [
        f"ralph-loop attempt transcript v{CONTRACT_VERSION}",
        f"Attempt: {entry.number}",
        f"Iteration: {entry.iteration}",
        f"Task: {entry.task_index + 1} / {entry.task_count}",
        f"Task attempt: {entry.task_attempt}",
        f"Agent: {entry.agent}",
        f"Timestamp: {format_timestamp(entry.timestamp)}",
        f"Prompt hash: {entry.prompt_hash}",
        f"Exit code: {entry.exit_code}",
        f"Duration ms: {entry.duration_ms}",
        f"Outcome: {'success' if entry.succeeded else 'failure'}",
        f"Signature: {entry.signature or '-'}",
        f"Mutation: {entry.mutation_note}",
    ]
    sections = [
        ("PROMPT", entry.prompt),
        ("STDOUT", entry.stdout),
        ("STDERR", entry.stderr),
    ]
    body: list[str] = []
    for title, content in sections:
        body.extend(["", f"===== {title} =====", content])
    return "\n".join(header + body) + "\n"


def write_status_event(path: Path, event: StatusEvent) -> None:
    """Overwrite the status file with one JSON object per line."""

    event.timestamp = format_timestamp(datetime.now(tz=UTC))
    payload: dict[str, object] = {
        "event": event.event,
        "iteration": event.iteration,
        "agent": event.agent,
        "timestamp": event.timestamp,
    }
    if event.task_index is not None:
        payload["task_index"] = event.task_index
    if event.task_attempt:
        payload["task_attempt"] = event.task_attempt
    if event.message:
        payload["message"] = event.message
    if event.exit_code:
        payload["exit_code"] = event.exit_code
    if event.done_flag:
        payload["done_flag"] = True
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False) + "\n", "utf-8")


def read_status_event(path: Path) -> dict[str, object]:
    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def _marker(kind: str) -> str:
    return f"<!-- ralph-loop:{kind} v{CONTRACT_VERSION} -->"


def _table_cell(value: str) -> str:
    compact = " ".join(value.split()).replace("|", "\\|")
    if len(compact) <= _TABLE_SIGNATURE_CHARS:
        return compact
    return compact[:_TABLE_SIGNATURE_CHARS] + "..."
