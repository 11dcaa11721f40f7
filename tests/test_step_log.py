"""Tests for the JSONL step log."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ralph_loop.schemas import Phase, SessionResult, UsageInfo
from ralph_loop.step_log import StepLog

pytestmark = pytest.mark.unit


def _read(log: StepLog) -> list[dict]:
    return [json.loads(line) for line in log.path.read_text(encoding="utf-8").splitlines()]


def test_records_are_appended_with_camel_case_keys(tmp_path: Path):
    log = StepLog(tmp_path)
    log.record(
        iteration=2,
        phase=Phase.REVIEW,
        transition=Phase.BUILD,
        reason="fix tests",
        retry_count=1,
        forced_replan=False,
        committed=True,
        commit_sha="abc123",
        duration_seconds=1.23456,
    )
    log.record(
        iteration=2,
        phase=Phase.BUILD,
        transition=Phase.REVIEW,
        reason="x" * 5000,
        retry_count=1,
        forced_replan=False,
        committed=False,
        duration_seconds=0.5,
        session=SessionResult(
            completed=True,
            success=True,
            session_id="s-1",
            usage=UsageInfo(total_tokens=42),
        ),
    )

    assert log.path == tmp_path.resolve() / ".ralph" / "logs" / "steps.jsonl"
    first, second = _read(log)
    assert first["phase"] == "REVIEW"
    assert first["transition"] == "BUILD"
    assert first["retryCount"] == 1
    assert first["commitSha"] == "abc123"
    assert first["durationSeconds"] == 1.235
    assert "session" not in first
    assert second["commitSha"] is None
    assert len(second["reason"]) == 2000
    assert second["session"]["id"] == "s-1"
    assert second["session"]["usage"]["total_tokens"] == 42


def test_write_failures_are_logged_not_raised(tmp_path: Path, caplog):
    # A regular file where the log directory should be makes the append fail.
    (tmp_path / ".ralph").write_text("not a directory", encoding="utf-8")
    log = StepLog(tmp_path)
    log.record(
        iteration=1,
        phase=Phase.PLAN,
        transition=Phase.BUILD,
        reason="r",
        retry_count=0,
        forced_replan=False,
        committed=False,
        duration_seconds=0.0,
    )
    assert "Could not append step log entry" in caplog.text
