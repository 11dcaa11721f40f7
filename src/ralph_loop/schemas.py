"""Pydantic models for loop state, configuration, and agent session results."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

STATE_SCHEMA_VERSION = 1
"""Version of the persisted state document layout."""

DEFAULT_TARGET_DOCUMENT = "docs/PROJECT_MANAGEMENT.md"


def utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class _WireModel(BaseModel):
    """Base for models persisted or exchanged with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Phases and configuration
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    """Stages of the control loop. ``END`` is terminal."""

    PLAN = "PLAN"
    BUILD = "BUILD"
    REVIEW = "REVIEW"
    END = "END"

    @property
    def is_terminal(self) -> bool:
        return self is Phase.END


class Config(BaseModel):
    """Run configuration, fixed for the lifetime of one loop run."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    max_turns: int = Field(default=50, gt=0)
    target_document: Path = Path(DEFAULT_TARGET_DOCUMENT)
    dry_run: bool = False
    start_phase: Phase | None = None
    repo_path: Path = Path(".")
    max_iterations: int | None = Field(default=None, gt=0)


# ---------------------------------------------------------------------------
# Persisted loop state
# ---------------------------------------------------------------------------


class Plan(_WireModel):
    """Implementation plan produced by the planner."""

    task: str
    files: list[str] = Field(default_factory=list)
    steps: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list)


class BuildProgress(_WireModel):
    """Steps completed and blockers hit during the latest build."""

    steps_completed: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)


class ReviewFeedback(_WireModel):
    """Outcome of the latest review."""

    last_feedback: str = ""
    issues: list[str] = Field(default_factory=list)
    approved: bool = False


class TransitionRecord(_WireModel):
    """One completed orchestrator step; history entries are never rewritten."""

    phase: Phase
    transition: Phase
    reason: str
    timestamp: str = Field(default_factory=utc_now)


class State(_WireModel):
    """Durable loop state - written to ``.ralph/state.json``."""

    schema_version: int = STATE_SCHEMA_VERSION
    phase: Phase = Phase.PLAN
    iteration: int = Field(default=1, ge=1)
    plan: Plan | None = None
    build: BuildProgress = Field(default_factory=BuildProgress)
    review: ReviewFeedback | None = None
    history: list[TransitionRecord] = Field(default_factory=list)
    updated_at: str = Field(default_factory=utc_now)


class StateUpdates(BaseModel):
    """Subset of :class:`State` a phase runner may replace.

    Only explicitly set fields are merged, so ``StateUpdates(plan=None)``
    clears the plan while ``StateUpdates()`` leaves it alone.
    """

    plan: Plan | None = None
    build: BuildProgress | None = None
    review: ReviewFeedback | None = None

    def apply_to(self, state: State) -> State:
        """Return a copy of *state* with the set fields replaced."""
        changes: dict[str, Any] = {name: getattr(self, name) for name in self.model_fields_set}
        if "build" in changes and changes["build"] is None:
            changes["build"] = BuildProgress()
        return state.model_copy(update=changes, deep=True)


class PhaseResult(BaseModel):
    """Contract every phase runner returns."""

    next_phase: Phase
    reason: str
    state_updates: StateUpdates = Field(default_factory=StateUpdates)


# ---------------------------------------------------------------------------
# Agent session results
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    """Normalized event types emitted by a streamed agent session."""

    TEXT_DELTA = "text_delta"
    ASSISTANT_MESSAGE = "assistant_message"
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"
    UNKNOWN = "unknown"


class SessionEvent(BaseModel):
    """A single parsed event from an agent session stream."""

    kind: EventKind = EventKind.UNKNOWN
    raw: dict[str, Any] = Field(default_factory=dict)
    text: str | None = None


class UsageInfo(BaseModel):
    """Token / cost usage reported by the agent."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    num_turns: int = 0


class SessionResult(BaseModel):
    """Aggregated outcome of one agent session.

    ``completed`` means the stream delivered a terminal result event;
    ``success`` is what that result reported.
    """

    completed: bool = False
    success: bool = False
    exit_code: int = -1
    final_text: str = ""
    session_id: str | None = None
    events: list[SessionEvent] = Field(default_factory=list)
    usage: UsageInfo = Field(default_factory=UsageInfo)
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
