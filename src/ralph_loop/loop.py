"""Phase-loop orchestrator.

:class:`PhaseLoop` is the state machine over PLAN, BUILD, REVIEW and END.
Each step runs the runner for the current phase, applies the retry /
forced-replan policy, checkpoints the working tree, merges the runner's
updates into the state, and persists it.  Steps never overlap, so the
persisted ``history`` is exactly the execution order.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Protocol

from ralph_loop.git_tools import Snapshot, checkpoint_message
from ralph_loop.schemas import (
    Config,
    Phase,
    PhaseResult,
    State,
    TransitionRecord,
    utc_now,
)
from ralph_loop.state_store import StateStore
from ralph_loop.step_log import StepLog

logger = logging.getLogger(__name__)


class Runner(Protocol):
    def run(self, state: State, config: Config) -> PhaseResult: ...


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------


def apply_retry_policy(
    current: Phase,
    result: PhaseResult,
    retry_count: int,
    max_retries: int,
) -> tuple[PhaseResult, int, bool]:
    """Apply the bounded REVIEW -> BUILD retry policy.

    Returns ``(result, retry_count, forced)``.  Every REVIEW -> BUILD
    transition consumes one retry; once ``retry_count`` reaches
    ``max_retries`` the transition is rewritten to PLAN and the count resets.
    Any transition to PLAN also resets the count.
    """
    if current is Phase.REVIEW and result.next_phase is Phase.BUILD:
        retry_count += 1
        if retry_count >= max_retries:
            notice = (
                f"Forced replan: {retry_count} REVIEW -> BUILD retries reached the limit "
                f"of {max_retries}. Reviewer said: {result.reason}"
            )
            forced = result.model_copy(update={"next_phase": Phase.PLAN, "reason": notice})
            return forced, 0, True
        return result, retry_count, False
    if result.next_phase is Phase.PLAN:
        return result, 0, False
    return result, retry_count, False


def advance_state(state: State, result: PhaseResult) -> State:
    """Return the state after applying *result* to *state*.

    Merges the runner's updates, appends one history record, moves to the
    next phase, and bumps ``iteration`` when that phase is PLAN.
    """
    merged = result.state_updates.apply_to(state)
    record = TransitionRecord(
        phase=state.phase,
        transition=result.next_phase,
        reason=result.reason,
    )
    iteration = state.iteration + 1 if result.next_phase is Phase.PLAN else state.iteration
    return merged.model_copy(
        update={
            "phase": result.next_phase,
            "iteration": iteration,
            "history": [*state.history, record],
            "updated_at": record.timestamp,
        }
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class PhaseLoop:
    """Drive the phase state machine until END.

    Parameters
    ----------
    config:
        Immutable run configuration.
    store:
        Where the state document is read from and persisted to.
    snapshot:
        Version-control collaborator.  Only the loop ever commits.
    runners:
        One runner per non-terminal phase.
    step_log:
        Optional JSONL step log.
    """

    def __init__(
        self,
        config: Config,
        *,
        store: StateStore,
        snapshot: Snapshot,
        runners: Mapping[Phase, Runner],
        step_log: StepLog | None = None,
    ) -> None:
        missing = [p.value for p in (Phase.PLAN, Phase.BUILD, Phase.REVIEW) if p not in runners]
        if missing:
            raise ValueError(f"No runner configured for phase(s): {', '.join(missing)}")
        self.config = config
        self.store = store
        self.snapshot = snapshot
        self.runners = dict(runners)
        self.step_log = step_log
        self.retry_count = 0

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def run(self) -> State:
        """Run steps until the state reaches END and return the final state.

        Stops early, without reaching END, when ``config.max_iterations``
        is set and the iteration counter passes it.
        """
        state = self.initial_state()
        logger.info(
            "Starting phase loop: phase=%s, iteration=%d, max_retries=%d, max_turns=%d, dry_run=%s",
            state.phase.value,
            state.iteration,
            self.config.max_retries,
            self.config.max_turns,
            self.config.dry_run,
        )
        if self.config.dry_run:
            logger.warning("DRY RUN: checkpoints will not be committed.")

        while not state.phase.is_terminal:
            limit = self.config.max_iterations
            if limit is not None and state.iteration > limit:
                logger.info(
                    "Stopping: iteration %d exceeds max_iterations=%d", state.iteration, limit
                )
                break
            state = self.step(state)

        logger.info(
            "Loop finished in phase %s after %d step(s) (iteration %d)",
            state.phase.value,
            len(state.history),
            state.iteration,
        )
        return state

    def initial_state(self) -> State:
        """Load the persisted state and apply any ``start_phase`` override."""
        state = self.store.read_state()
        start_phase = self.config.start_phase
        if start_phase is not None:
            logger.info("Overriding phase %s -> %s", state.phase.value, start_phase.value)
            state = state.model_copy(update={"phase": start_phase, "updated_at": utc_now()})
            state = self.store.write_state(state)
            if start_phase is Phase.BUILD:
                self.snapshot.mark_review_base()
        elif state.history:
            logger.info("Resuming in phase %s (iteration %d)", state.phase.value, state.iteration)
        return state

    def step(self, state: State) -> State:
        """Execute one orchestrator step and return the persisted new state."""
        current = state.phase
        if current.is_terminal:
            return state
        runner = self.runners[current]

        logger.info("---- Iteration %d: %s ----", state.iteration, current.value)
        started = time.monotonic()
        result = runner.run(state, self.config)

        result, self.retry_count, forced = apply_retry_policy(
            current, result, self.retry_count, self.config.max_retries
        )
        if forced:
            logger.warning("Retry budget exhausted; forcing replan.")

        committed, commit_sha = self._checkpoint(current, result)
        if current is Phase.PLAN and result.next_phase in (Phase.BUILD, Phase.REVIEW):
            # Reviews diff against where work on this plan began.
            self.snapshot.mark_review_base()

        next_state = self.store.write_state(advance_state(state, result))
        logger.info(
            "%s -> %s: %s (retries %d/%d)",
            current.value,
            result.next_phase.value,
            result.reason,
            self.retry_count,
            self.config.max_retries,
        )

        if self.step_log is not None:
            self.step_log.record(
                iteration=state.iteration,
                phase=current,
                transition=result.next_phase,
                reason=result.reason,
                retry_count=self.retry_count,
                forced_replan=forced,
                committed=committed,
                commit_sha=commit_sha,
                duration_seconds=time.monotonic() - started,
                session=getattr(runner, "last_session", None),
            )
        return next_state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _checkpoint(self, current: Phase, result: PhaseResult) -> tuple[bool, str | None]:
        """Commit pending changes for this transition unless in dry-run mode.

        Returns ``(committed, sha)``.
        """
        if self.config.dry_run:
            logger.info("[dry run] skipping checkpoint commit")
            return False, None
        if not self.snapshot.has_uncommitted_changes():
            logger.info("No changes to commit")
            return False, None
        sha = self.snapshot.commit(checkpoint_message(current, result.next_phase, result.reason))
        return True, sha
