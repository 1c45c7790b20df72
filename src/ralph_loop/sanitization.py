"""Preview helpers for console and audit-log lines.

Previews are for human scanning only. Memory files and attempt transcripts
always receive the raw, unredacted text.
"""

from __future__ import annotations

import re

_DEFAULT_PREVIEW_CHARS = 240

_BEARER = re.compile(r"(?i)\bbearer\s+[\w.\-]{8,}")
_ASSIGNED_SECRET = re.compile(
    r"(?i)\b([a-z0-9_]*(?:key|token|secret|password))\s*[:=]\s*['\"]?[^'\"\s&]+['\"]?",
)


def sanitize_preview(text: str, *, max_chars: int = _DEFAULT_PREVIEW_CHARS) -> str:
    """Fold to one line, mask bearer tokens and ``NAME=value`` secrets, clamp length."""

    compact = " ".join(text.split())
    if not compact:
        return ""

    redacted = _BEARER.sub("Bearer [redacted]", compact)
    redacted = _ASSIGNED_SECRET.sub(r"\1=[redacted]", redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars] + "..."
