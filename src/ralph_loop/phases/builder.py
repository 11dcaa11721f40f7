"""BUILD phase: implement the current plan."""

from __future__ import annotations

from ralph_loop.decisions import BuildDecision
from ralph_loop.phases.base import PhaseRunner
from ralph_loop.prompts import build_build_prompt
from ralph_loop.schemas import BuildProgress, Config, Phase, PhaseResult, State, StateUpdates


class Builder(PhaseRunner[BuildDecision]):
    phase = Phase.BUILD
    decision_schema = BuildDecision

    def build_prompt(self, state: State, config: Config) -> str:
        return build_build_prompt(state, config.target_document, self.catalog)

    def to_result(self, state: State, decision: BuildDecision) -> PhaseResult:
        completed = list(state.build.steps_completed)
        for step in decision.payload.steps_completed:
            if step not in completed:
                completed.append(step)
        progress = BuildProgress(steps_completed=completed, blockers=decision.payload.blockers)
        return PhaseResult(
            next_phase=decision.next_phase,
            reason=decision.reason,
            state_updates=StateUpdates(build=progress),
        )

    def fallback(self, state: State, error: str) -> PhaseResult:
        return PhaseResult(
            next_phase=Phase.REVIEW,
            reason=self._fallback_reason(Phase.REVIEW, error),
        )
