"""PLAN phase: choose the next task and write a plan for it."""

from __future__ import annotations

from ralph_loop.decisions import PlanDecision
from ralph_loop.phases.base import PhaseRunner
from ralph_loop.prompts import build_plan_prompt
from ralph_loop.schemas import BuildProgress, Config, Phase, PhaseResult, State, StateUpdates

RECENT_COMMIT_COUNT = 10


class Planner(PhaseRunner[PlanDecision]):
    phase = Phase.PLAN
    decision_schema = PlanDecision

    def build_prompt(self, state: State, config: Config) -> str:
        commits = self.repo.recent_commits(RECENT_COMMIT_COUNT)
        return build_plan_prompt(state, config.target_document, commits, self.catalog)

    def to_result(self, state: State, decision: PlanDecision) -> PhaseResult:
        plan = decision.payload.plan
        if plan is None:
            # Only reachable for END; the previous plan stays on record.
            updates = StateUpdates()
        else:
            # A new plan starts a clean build and review slate.
            updates = StateUpdates(plan=plan.to_plan(), build=BuildProgress(), review=None)
        return PhaseResult(
            next_phase=decision.next_phase,
            reason=decision.reason,
            state_updates=updates,
        )

    def fallback(self, state: State, error: str) -> PhaseResult:
        return PhaseResult(
            next_phase=Phase.BUILD,
            reason=self._fallback_reason(Phase.BUILD, error),
        )
