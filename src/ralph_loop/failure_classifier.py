"""Deterministic failure signatures and repeat-streak tracking for the retry loop."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum

FAILURE_CLASSIFIER_VERSION = 1
SIGNATURE_MAX_CHARS = 120

_FALLBACK_TAIL_LINES = 20

# Ordered from most to least specific; the first rule with a matching line wins.
_ERROR_LINE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("exception", re.compile(r"\b[A-Za-z_][\w.]*(?:Error|Exception)\b:")),
    ("error_prefix", re.compile(r"(?i)\b(?:error|fatal|panic)(?:\[[^\]]*\])?:")),
    ("test_failure", re.compile(r"\b(?:FAILED|FAIL)\b")),
    (
        "keyword",
        re.compile(
            r"(?i)\b(?:error|exception|failed|failure|cannot|unable to|not found"
            r"|permission denied|refused|timed out|segmentation fault)\b",
        ),
    ),
)

_NORMALIZERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(
            r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?",
        ),
        "<ts>",
    ),
    (re.compile(r"\b\d{1,2}:\d{2}:\d{2}(?:[.,]\d+)?\b"), "<time>"),
    (
        re.compile(
            r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b",
        ),
        "<uuid>",
    ),
    (re.compile(r"\b0x[0-9a-fA-F]+\b"), "<hex>"),
    (re.compile(r"(?<![\w.~])(?:[A-Za-z]:)?(?:[\\/][^\\/\s:'\"()\[\]]+)+[\\/]"), ""),
    (re.compile(r"\b\d+(?:\.\d+)?\s?(?:ms|s|sec|secs|seconds)\b"), "<dur>"),
    (re.compile(r"\s+"), " "),
)


class FailureKind(str, Enum):
    """Why an attempt did not count as success."""

    PROCESS_EXIT = "process_exit"
    TOKEN_MISSING = "token_missing"


@dataclass(slots=True)
class FailureClassification:
    """Signature plus the unabridged diagnostic context of one failed attempt."""

    kind: FailureKind
    signature: str
    context: str
    matched_rule: str
    excerpt: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "kind": self.kind.value,
            "signature": self.signature,
            "matched_rule": self.matched_rule,
        }


def completion_detected(*, exit_code: int, stdout: str, completion_token: str) -> bool:
    """Success criterion: clean exit and the token verbatim somewhere in stdout."""

    return exit_code == 0 and completion_token in stdout


def classify_attempt_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    completion_token: str,
) -> FailureClassification:
    """Reduce raw process output into a stable signature and full context.

    Signature derivation: the first line matching the highest-priority error
    rule, normalized (timestamps, clock times, UUIDs, hex addresses, absolute
    directory prefixes and durations masked, whitespace collapsed, case kept)
    and clamped to ``SIGNATURE_MAX_CHARS``. When no line matches, a short
    SHA-1 of the normalized output tail stands in for the excerpt.
    """

    if exit_code == 0:
        haystack = f"{stderr}\n{stdout}"
        rule, excerpt = _first_error_line(haystack)
        label = "token missing"
        signature = label if excerpt is None else f"{label}: {excerpt}"
        return FailureClassification(
            kind=FailureKind.TOKEN_MISSING,
            signature=_clamp(signature),
            context=_token_missing_context(
                stdout=stdout,
                stderr=stderr,
                completion_token=completion_token,
            ),
            matched_rule=rule,
            excerpt=excerpt,
        )

    source_name, source = ("stderr", stderr) if stderr.strip() else ("stdout", stdout)
    rule, excerpt = _first_error_line(source)
    if excerpt is None:
        excerpt = _tail_digest(source)
    return FailureClassification(
        kind=FailureKind.PROCESS_EXIT,
        signature=_clamp(f"exit {exit_code}: {excerpt}"),
        context=_exit_context(exit_code=exit_code, source_name=source_name, source=source),
        matched_rule=rule,
        excerpt=excerpt,
    )


def normalize_line(line: str) -> str:
    normalized = line
    for pattern, replacement in _NORMALIZERS:
        normalized = pattern.sub(replacement, normalized)
    return normalized.strip()


@dataclass(slots=True)
class FailureTracker:
    """Per-task failure accounting keyed by signature equality.

    ``streak`` counts consecutive attempts sharing ``last_signature``; a
    differing signature restarts it at 1.
    """

    counts: dict[str, int] = field(default_factory=dict)
    last_signature: str | None = None
    streak: int = 0
    last_context: str | None = None

    def record(self, signature: str, context: str) -> int:
        self.counts[signature] = self.counts.get(signature, 0) + 1
        if signature == self.last_signature:
            self.streak += 1
        else:
            self.last_signature = signature
            self.streak = 1
        self.last_context = context
        return self.streak

    @property
    def is_stuck(self) -> bool:
        return self.streak >= 2

    def reset(self) -> None:
        self.counts.clear()
        self.last_signature = None
        self.streak = 0
        self.last_context = None


def _first_error_line(text: str) -> tuple[str, str | None]:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    for rule, pattern in _ERROR_LINE_RULES:
        for line in lines:
            if pattern.search(line):
                normalized = normalize_line(line)
                if normalized:
                    return rule, normalized
    return "fallback_digest", None


def _tail_digest(text: str) -> str:
    lines = [normalize_line(line) for line in text.splitlines() if line.strip()]
    if not lines:
        return "<no output>"
    tail = "\n".join(lines[-_FALLBACK_TAIL_LINES:])
    return "#" + hashlib.sha1(tail.encode("utf-8")).hexdigest()[:10]  # noqa: S324


def _clamp(signature: str) -> str:
    if len(signature) <= SIGNATURE_MAX_CHARS:
        return signature
    return signature[: SIGNATURE_MAX_CHARS - 3] + "..."


def _exit_context(*, exit_code: int, source_name: str, source: str) -> str:
    body = source if source.strip() else "(no output captured)"
    return f"Agent process exited with code {exit_code}.\nDiagnostic source: {source_name}\n\n{body}"


def _token_missing_context(*, stdout: str, stderr: str, completion_token: str) -> str:
    parts = [
        "Agent process exited with code 0 but never printed the completion token "
        f"{completion_token!r} on stdout.",
        "The task is not considered done. Full stdout of the attempt follows.",
        "",
        "--- stdout ---",
        stdout if stdout.strip() else "(empty)",
    ]
    if stderr.strip():
        parts.extend(["", "--- stderr ---", stderr])
    return "\n".join(parts)
