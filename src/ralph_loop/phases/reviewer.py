"""REVIEW phase: judge the work done for the current plan."""

from __future__ import annotations

from ralph_loop.decisions import ReviewDecision
from ralph_loop.phases.base import PhaseRunner
from ralph_loop.prompts import build_review_prompt
from ralph_loop.schemas import Config, Phase, PhaseResult, ReviewFeedback, State, StateUpdates


class Reviewer(PhaseRunner[ReviewDecision]):
    phase = Phase.REVIEW
    decision_schema = ReviewDecision

    def build_prompt(self, state: State, config: Config) -> str:
        return build_review_prompt(
            state, config.target_document, self.repo.diff(), self.catalog
        )

    def to_result(self, state: State, decision: ReviewDecision) -> PhaseResult:
        payload = decision.payload
        review = ReviewFeedback(
            last_feedback=payload.feedback,
            issues=payload.issues,
            approved=payload.approved,
        )
        return PhaseResult(
            next_phase=decision.next_phase,
            reason=decision.reason,
            state_updates=StateUpdates(review=review),
        )

    def fallback(self, state: State, error: str) -> PhaseResult:
        reason = self._fallback_reason(Phase.PLAN, error)
        return PhaseResult(
            next_phase=Phase.PLAN,
            reason=reason,
            state_updates=StateUpdates(review=ReviewFeedback(last_feedback=reason)),
        )
