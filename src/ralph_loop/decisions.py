"""Decode transition decisions from untrusted agent output.

Every phase instruction asks the agent to finish its response with a fenced
JSON block::

    ```json
    {"nextPhase": "BUILD", "reason": "...", "payload": {...}}
    ```

The decoder picks the last fenced block (or the whole response when it is a
bare JSON object), parses it, and validates it against the phase's schema.
Unknown keys, phases outside the allowed set, missing reasons and payloads
that break the phase contract are all rejected with :class:`DecisionError`;
nothing is repaired or guessed.
"""

from __future__ import annotations

import json
import re
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ralph_loop.errors import DecisionError
from ralph_loop.schemas import Phase, Plan

MAX_DECISION_CHARS = 64 * 1024
"""Largest decision block the decoder will parse."""

_FENCE_LINE_RE = re.compile(r"^[ \t]*(`{3,})[ \t]*([\w.+-]*)[ \t]*$")
_DECISION_TAGS = frozenset({"", "json"})


class _StrictModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class DecisionPlan(_StrictModel):
    """Plan as proposed by the agent; converted to :class:`Plan` once accepted."""

    task: str = Field(min_length=1)
    files: list[str] = Field(default_factory=list)
    steps: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list)

    def to_plan(self) -> Plan:
        return Plan.model_validate(self.model_dump())


class PlanPayload(_StrictModel):
    plan: DecisionPlan | None = None



class BuildPayload(_StrictModel):
    steps_completed: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)


class ReviewPayload(_StrictModel):
    feedback: str = ""
    issues: list[str] = Field(default_factory=list)
    approved: bool = False

    @field_validator("feedback", mode="before")
    @classmethod
    def _null_feedback(cls, value: Any) -> Any:
        return "" if value is None else value


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class Decision(_StrictModel):
    """Common ``{nextPhase, reason, payload}`` envelope."""

    allowed_phases: ClassVar[frozenset[Phase]] = frozenset()

    next_phase: Phase
    reason: str = Field(min_length=1)

    @model_validator(mode="after")
    def _check_allowed(self) -> Decision:
        allowed_phases = type(self).allowed_phases
        if self.next_phase not in allowed_phases:
            allowed = ", ".join(sorted(p.value for p in allowed_phases))
            raise ValueError(
                f"nextPhase {self.next_phase.value} is not allowed here (expected one of {allowed})"
            )
        return self


class PlanDecision(Decision):
    allowed_phases: ClassVar[frozenset[Phase]] = frozenset({Phase.BUILD, Phase.REVIEW, Phase.END})

    payload: PlanPayload = Field(default_factory=PlanPayload)

    @model_validator(mode="after")
    def _plan_required_unless_ending(self) -> PlanDecision:
        if self.next_phase is not Phase.END and self.payload.plan is None:
            raise ValueError(f"payload.plan is required when nextPhase is {self.next_phase.value}")
        return self


class BuildDecision(Decision):
    allowed_phases: ClassVar[frozenset[Phase]] = frozenset({Phase.REVIEW, Phase.PLAN, Phase.BUILD})

    payload: BuildPayload = Field(default_factory=BuildPayload)


class ReviewDecision(Decision):
    allowed_phases: ClassVar[frozenset[Phase]] = frozenset(
        {Phase.PLAN, Phase.BUILD, Phase.END, Phase.REVIEW}
    )

    payload: ReviewPayload = Field(default_factory=ReviewPayload)


D = TypeVar("D", bound=Decision)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _fenced_blocks(text: str) -> list[tuple[str, str]]:
    """Split *text* into ``(language_tag, body)`` pairs for each closed fence.

    An opener may carry any language tag; only a bare fence at least as long
    as the opener closes it.  An unclosed trailing fence is ignored.
    """
    blocks: list[tuple[str, str]] = []
    lines = text.splitlines()
    opener: tuple[str, str, int] | None = None
    for index, line in enumerate(lines):
        match = _FENCE_LINE_RE.match(line)
        if match is None:
            continue
        fence, tag = match.groups()
        if opener is None:
            opener = (fence, tag.lower(), index + 1)
        elif not tag and len(fence) >= len(opener[0]):
            _, open_tag, start = opener
            blocks.append((open_tag, "\n".join(lines[start:index])))
            opener = None
    return blocks


def extract_decision_block(text: str) -> str:
    """Return the raw JSON text of the decision block in *text*.

    The last fenced block tagged ``json`` (or untagged) wins; blocks in
    other languages, such as code or diffs the agent quotes, are skipped.
    Without any such fence, the whole response is used only if it is itself
    a JSON object.
    """
    body = text or ""
    blocks = [content for tag, content in _fenced_blocks(body) if tag in _DECISION_TAGS]
    if blocks:
        return blocks[-1].strip()
    stripped = body.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return stripped
    raise DecisionError("no fenced JSON decision block found in agent response")


def _summarize_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for err in exc.errors()[:3]:
        loc = ".".join(str(item) for item in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    more = exc.error_count() - len(parts)
    if more > 0:
        parts.append(f"+{more} more")
    return "; ".join(parts)


def decode_decision(text: str, schema: type[D]) -> D:
    """Extract and validate a decision of type *schema* from agent output.

    Raises :class:`DecisionError` when no block is present, the block is too
    large or not a JSON object, or it fails schema validation.
    """
    block = extract_decision_block(text)
    if len(block) > MAX_DECISION_CHARS:
        raise DecisionError(f"decision block exceeds {MAX_DECISION_CHARS} characters")

    try:
        payload = json.loads(block)
    except json.JSONDecodeError as exc:
        raise DecisionError(
            f"decision block is not valid JSON: {exc.msg} (line {exc.lineno})"
        ) from exc
    if not isinstance(payload, dict):
        raise DecisionError("decision block must be a JSON object")

    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        detail = _summarize_validation_error(exc)
        raise DecisionError(f"decision failed validation: {detail}") from exc
