from __future__ import annotations

import re
from pathlib import Path

import allure

from ralph_loop.audit import AuditLog

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Audit Log"),
]


def test_start_truncates_unless_logs_are_kept(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "ralph.log"
    audit = AuditLog(path)

    audit.start(keep_logs=False)
    audit.record("first run")
    audit.start(keep_logs=True)
    audit.record("second run")

    lines = path.read_text("utf-8").splitlines()
    assert [line.split(" ", 1)[1] for line in lines] == ["first run", "second run"]
    assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z ", lines[0])

    audit.start(keep_logs=False)
    assert path.read_text("utf-8") == ""


def test_record_failure_does_not_raise(tmp_path: Path) -> None:
    audit = AuditLog(tmp_path / "is-a-dir")
    (tmp_path / "is-a-dir").mkdir()

    audit.record("ignored")
