from __future__ import annotations

import allure

from ralph_loop.sanitization import sanitize_preview

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Audit Previews"),
]


def test_preview_folds_lines_and_clamps() -> None:
    preview = sanitize_preview("first line\n\n   second\tline " + "y" * 50, max_chars=20)

    assert preview == "first line second li..."


def test_preview_redacts_tokens_and_keys() -> None:
    preview = sanitize_preview(
        "curl -H 'Authorization: Bearer abcdef1234567890' "
        "https://api.example.com/v1?token=secret123 ANTHROPIC_API_KEY=sk-ant-xyz",
    )

    assert "abcdef1234567890" not in preview
    assert "secret123" not in preview
    assert "sk-ant-xyz" not in preview
    assert "Bearer [redacted]" in preview
    assert "?token=[redacted]" in preview
    assert "ANTHROPIC_API_KEY=[redacted]" in preview


def test_preview_keeps_ordinary_task_text() -> None:
    text = "Rotate the signing key in config.py and update the token docs"

    assert sanitize_preview(text) == text


def test_blank_preview_is_empty() -> None:
    assert sanitize_preview(" \n\t ") == ""
