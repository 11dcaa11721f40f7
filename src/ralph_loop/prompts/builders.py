"""Instruction builders for the PLAN, BUILD and REVIEW phases."""

from __future__ import annotations

from pathlib import Path

from ralph_loop.prompts.catalog import PromptCatalog, get_catalog
from ralph_loop.schemas import Phase, Plan, State

MAX_DIFF_CHARS = 60_000
"""Diff text beyond this length is truncated before it reaches the prompt."""


def _bullets(items: list[str], empty: str = "(none)") -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def _plan_section(plan: Plan | None) -> str:
    if plan is None:
        return "No plan is recorded for this iteration."
    return "\n".join(
        [
            f"**Task:** {plan.task}",
            "",
            "**Files:**",
            _bullets(plan.files),
            "",
            "**Steps:**",
            _bullets(plan.steps),
            "",
            "**Acceptance criteria:**",
            _bullets(plan.acceptance_criteria),
        ]
    )


def _header(phase: Phase, state: State, catalog: PromptCatalog) -> list[str]:
    lines = [
        f"# Ralph Loop - {phase.value} phase (iteration {state.iteration})",
        "",
        catalog.role(phase),
    ]
    description = catalog.phase_meta(phase)["description"]
    if description:
        lines.append(f"Goal of this phase: {description}")
    return lines


def _closing(phase: Phase, target_document: Path, catalog: PromptCatalog) -> list[str]:
    return [
        "",
        "## Your task",
        catalog.task(phase, target_document=target_document),
        "",
        catalog.decision("header"),
        "",
        catalog.decision("intro"),
        "",
        "```json",
        catalog.decision_example(phase),
        "```",
        "",
        *(f"- {rule}" for rule in catalog.decision_rules(phase)),
        "",
        catalog.decision("footer"),
    ]


def build_plan_prompt(
    state: State,
    target_document: Path,
    recent_commits: str,
    catalog: PromptCatalog | None = None,
) -> str:
    """Compose the PLAN instruction."""
    catalog = catalog or get_catalog()
    parts: list[str] = [
        *_header(Phase.PLAN, state, catalog),
        "",
        "## Target document",
        f"Read and understand: {target_document}",
        "",
        "## Recent git history",
        recent_commits or "No recent commits.",
        "",
        "## Previous context",
    ]
    if state.review is not None and state.review.last_feedback:
        parts.append(f"Last review feedback: {state.review.last_feedback}")
        if state.review.issues:
            parts.append("Open review issues:\n" + _bullets(state.review.issues))
    else:
        parts.append("Fresh start - no previous review feedback.")
    if state.build.blockers:
        parts.append("Previous blockers:\n" + _bullets(state.build.blockers))

    parts.extend(_closing(Phase.PLAN, target_document, catalog))
    return "\n".join(parts)


def build_build_prompt(
    state: State,
    target_document: Path,
    catalog: PromptCatalog | None = None,
) -> str:
    """Compose the BUILD instruction."""
    catalog = catalog or get_catalog()
    parts: list[str] = [
        *_header(Phase.BUILD, state, catalog),
        "",
        "## The plan",
        _plan_section(state.plan),
    ]
    if state.build.steps_completed:
        parts.extend(["", "## Already completed", _bullets(state.build.steps_completed)])
    if state.review is not None and state.review.issues:
        parts.extend(["", "## Review issues to fix", _bullets(state.review.issues)])
        if state.review.last_feedback:
            parts.extend(["", f"Reviewer feedback: {state.review.last_feedback}"])

    parts.extend(_closing(Phase.BUILD, target_document, catalog))
    return "\n".join(parts)


def build_review_prompt(
    state: State,
    target_document: Path,
    diff: str,
    catalog: PromptCatalog | None = None,
) -> str:
    """Compose the REVIEW instruction."""
    catalog = catalog or get_catalog()
    diff_text = diff or "No changes detected."
    if len(diff_text) > MAX_DIFF_CHARS:
        omitted = len(diff_text) - MAX_DIFF_CHARS
        diff_text = diff_text[:MAX_DIFF_CHARS] + f"\n... [{omitted} characters truncated]"

    parts: list[str] = [
        *_header(Phase.REVIEW, state, catalog),
        "",
        "## The plan",
        _plan_section(state.plan),
        "",
        "## Changes made for this plan",
        "```diff",
        diff_text,
        "```",
    ]
    parts.extend(_closing(Phase.REVIEW, target_document, catalog))
    return "\n".join(parts)
