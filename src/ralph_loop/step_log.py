"""Append-only machine-readable log of orchestrator steps.

Writes one JSON object per completed step to ``.ralph/logs/steps.jsonl``.
The log is diagnostic only; the state document remains the source of truth.
"""

from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path
from typing import Any

from ralph_loop.file_io import append_jsonl
from ralph_loop.schemas import Phase, SessionResult
from ralph_loop.state_store import STATE_DIR

logger = logging.getLogger(__name__)

_MAX_REASON_CHARS = 2_000


def _truncate(text: str, max_len: int) -> str:
    clean = (text or "").strip()
    if len(clean) <= max_len:
        return clean
    return clean[: max_len - 3] + "..."


class StepLog:
    """Per-repository JSONL step log."""

    def __init__(self, repo_path: str | Path) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.path = self.repo_path / STATE_DIR / "logs" / "steps.jsonl"

    def record(
        self,
        *,
        iteration: int,
        phase: Phase,
        transition: Phase,
        reason: str,
        retry_count: int,
        forced_replan: bool,
        committed: bool,
        commit_sha: str | None = None,
        duration_seconds: float,
        session: SessionResult | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "iteration": iteration,
            "phase": phase.value,
            "transition": transition.value,
            "reason": _truncate(reason, _MAX_REASON_CHARS),
            "retryCount": retry_count,
            "forcedReplan": forced_replan,
            "committed": committed,
            "commitSha": commit_sha,
            "durationSeconds": round(duration_seconds, 3),
        }
        if session is not None:
            payload["session"] = {
                "id": session.session_id,
                "success": session.success,
                "errors": [_truncate(err, 500) for err in session.errors[:5]],
                "usage": session.usage.model_dump(),
            }
        try:
            append_jsonl(self.path, payload)
        except OSError as exc:
            logger.warning("Could not append step log entry to %s: %s", self.path, exc)
