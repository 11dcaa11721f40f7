"""Unit tests for the phase-loop orchestrator."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ralph_loop.errors import AgentSessionError, StateStoreError
from ralph_loop.loop import PhaseLoop, advance_state, apply_retry_policy
from ralph_loop.schemas import (
    BuildProgress,
    Config,
    Phase,
    PhaseResult,
    Plan,
    ReviewFeedback,
    State,
    StateUpdates,
)
from ralph_loop.state_store import StateStore
from ralph_loop.step_log import StepLog

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class ScriptedRunner:
    """Returns queued results and records the phase it was invoked in."""

    def __init__(self, *results: PhaseResult) -> None:
        self.results = list(results)
        self.seen_phases: list[Phase] = []

    def run(self, state: State, config: Config) -> PhaseResult:
        self.seen_phases.append(state.phase)
        if not self.results:
            raise AssertionError(f"unexpected extra call in phase {state.phase.value}")
        return self.results.pop(0)


class FakeSnapshot:
    def __init__(self, dirty: bool = True) -> None:
        self.dirty = dirty
        self.commits: list[str] = []
        self.review_bases = 0

    def has_uncommitted_changes(self) -> bool:
        return self.dirty

    def diff(self, reference: str | None = None) -> str:
        return ""

    def commit(self, message: str) -> str:
        self.commits.append(message)
        return f"sha{len(self.commits)}"

    def find_last_checkpoint(self, marker: str = "ralph:") -> str | None:
        return None

    def mark_review_base(self) -> str | None:
        self.review_bases += 1
        return f"base{self.review_bases}"


def result(next_phase: Phase, reason: str = "r", **updates: object) -> PhaseResult:
    return PhaseResult(next_phase=next_phase, reason=reason, state_updates=StateUpdates(**updates))


def make_loop(
    tmp_path: Path,
    *,
    plan: list[PhaseResult] | None = None,
    build: list[PhaseResult] | None = None,
    review: list[PhaseResult] | None = None,
    snapshot: FakeSnapshot | None = None,
    step_log: StepLog | None = None,
    **config_kwargs: object,
) -> tuple[PhaseLoop, dict[Phase, ScriptedRunner], FakeSnapshot, StateStore]:
    runners = {
        Phase.PLAN: ScriptedRunner(*(plan or [])),
        Phase.BUILD: ScriptedRunner(*(build or [])),
        Phase.REVIEW: ScriptedRunner(*(review or [])),
    }
    snap = snapshot or FakeSnapshot()
    store = StateStore(tmp_path)
    config = Config(repo_path=tmp_path, **config_kwargs)
    loop = PhaseLoop(config, store=store, snapshot=snap, runners=runners, step_log=step_log)
    return loop, runners, snap, store


PLAN = Plan(task="Add login", steps=["form"], acceptance_criteria=["works"])


# ---------------------------------------------------------------------------
# Pure policy helpers
# ---------------------------------------------------------------------------


class TestApplyRetryPolicy:
    def test_review_to_build_consumes_a_retry(self):
        res, count, forced = apply_retry_policy(Phase.REVIEW, result(Phase.BUILD), 0, 3)
        assert (res.next_phase, count, forced) == (Phase.BUILD, 1, False)

    def test_exhausted_budget_forces_replan(self):
        res, count, forced = apply_retry_policy(Phase.REVIEW, result(Phase.BUILD, "fix x"), 2, 3)
        assert res.next_phase == Phase.PLAN
        assert count == 0
        assert forced is True
        assert "Forced replan" in res.reason
        assert "fix x" in res.reason

    def test_forced_replan_keeps_state_updates(self):
        review = ReviewFeedback(last_feedback="bad", issues=["x"])
        res, _, _ = apply_retry_policy(Phase.REVIEW, result(Phase.BUILD, review=review), 2, 3)
        assert res.state_updates.review == review

    def test_zero_budget_forces_replan_on_first_retry(self):
        res, count, forced = apply_retry_policy(Phase.REVIEW, result(Phase.BUILD), 0, 0)
        assert (res.next_phase, count, forced) == (Phase.PLAN, 0, True)

    def test_any_transition_to_plan_resets(self):
        _, count, _ = apply_retry_policy(Phase.BUILD, result(Phase.PLAN), 2, 3)
        assert count == 0

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (Phase.PLAN, Phase.BUILD),
            (Phase.BUILD, Phase.REVIEW),
            (Phase.BUILD, Phase.BUILD),
            (Phase.REVIEW, Phase.REVIEW),
            (Phase.REVIEW, Phase.END),
        ],
    )
    def test_other_transitions_leave_count(self, current, target):
        res, count, forced = apply_retry_policy(current, result(target), 2, 3)
        assert (res.next_phase, count, forced) == (target, 2, False)


class TestAdvanceState:
    def test_appends_record_and_moves_phase(self):
        state = State()
        nxt = advance_state(state, result(Phase.BUILD, "planned", plan=PLAN))
        assert nxt.phase == Phase.BUILD
        assert nxt.iteration == 1
        assert nxt.plan == PLAN
        assert len(nxt.history) == 1
        record = nxt.history[0]
        assert (record.phase, record.transition, record.reason) == (
            Phase.PLAN,
            Phase.BUILD,
            "planned",
        )
        assert nxt.updated_at == record.timestamp

    def test_entering_plan_bumps_iteration(self):
        state = State(phase=Phase.REVIEW, iteration=2)
        assert advance_state(state, result(Phase.PLAN)).iteration == 3

    def test_input_state_is_not_mutated(self):
        state = State()
        advance_state(state, result(Phase.BUILD, plan=PLAN))
        assert state.history == []
        assert state.plan is None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TestPhaseLoopInit:
    def test_requires_all_working_runners(self, tmp_path):
        with pytest.raises(ValueError, match="REVIEW"):
            PhaseLoop(
                Config(repo_path=tmp_path),
                store=StateStore(tmp_path),
                snapshot=FakeSnapshot(),
                runners={Phase.PLAN: ScriptedRunner(), Phase.BUILD: ScriptedRunner()},
            )


class TestScenarios:
    def test_retry_budget_exhaustion_forces_replan(self, tmp_path):
        loop, runners, _, store = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN), result(Phase.END, "done")],
            build=[result(Phase.REVIEW)] * 3,
            review=[
                result(Phase.BUILD, "fix 1"),
                result(Phase.BUILD, "fix 2"),
                result(Phase.BUILD, "fix 3"),
            ],
            max_retries=3,
        )

        state = loop.initial_state()
        retry_counts: list[int] = []
        while state.phase != Phase.PLAN or not state.history:
            state = loop.step(state)
            retry_counts.append(loop.retry_count)

        assert retry_counts == [0, 0, 1, 1, 2, 2, 0]
        assert state.iteration == 2
        assert loop.retry_count == 0
        last = state.history[-1]
        assert (last.phase, last.transition) == (Phase.REVIEW, Phase.PLAN)
        assert "Forced replan" in last.reason
        assert store.read_state() == state

        final = loop.step(state)
        assert final.phase == Phase.END
        assert runners[Phase.REVIEW].results == []

    def test_review_end_halts_without_further_mutation(self, tmp_path):
        loop, runners, _, store = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN)],
            build=[result(Phase.REVIEW)],
            review=[result(Phase.END, "approved", review=ReviewFeedback(approved=True))],
        )

        final = loop.run()

        assert final.phase == Phase.END
        assert [h.transition for h in final.history] == [Phase.BUILD, Phase.REVIEW, Phase.END]
        persisted = store.state_path.read_bytes()

        # Running again from END neither calls a runner nor rewrites the document.
        again = loop.run()
        assert again == final
        assert store.state_path.read_bytes() == persisted
        assert [len(r.seen_phases) for r in runners.values()] == [1, 1, 1]

    def test_dry_run_persists_state_without_committing(self, tmp_path):
        snapshot = FakeSnapshot(dirty=True)
        loop, _, snap, store = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN)],
            build=[result(Phase.REVIEW, "built")],
            review=[result(Phase.END)],
            snapshot=snapshot,
            dry_run=True,
        )

        state = loop.initial_state()
        state = loop.step(state)
        state = loop.step(state)

        assert state.phase == Phase.REVIEW
        assert snap.commits == []
        assert store.read_state().phase == Phase.REVIEW

        loop.step(state)
        assert snap.commits == []


class TestLoopProperties:
    def test_history_matches_steps_and_invocation_phases(self, tmp_path):
        loop, runners, _, _ = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN), result(Phase.REVIEW, plan=PLAN)],
            build=[result(Phase.BUILD), result(Phase.PLAN, "blocked")],
            review=[result(Phase.REVIEW), result(Phase.END)],
        )

        final = loop.run()

        expected_phases = [
            Phase.PLAN,
            Phase.BUILD,
            Phase.BUILD,
            Phase.PLAN,
            Phase.REVIEW,
            Phase.REVIEW,
        ]
        assert [h.phase for h in final.history] == expected_phases
        assert runners[Phase.BUILD].seen_phases == [Phase.BUILD, Phase.BUILD]
        assert final.iteration == 2

    def test_iteration_counts_entries_into_plan(self, tmp_path):
        loop, _, _, _ = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN)] * 3,
            build=[result(Phase.REVIEW)] * 3,
            review=[result(Phase.PLAN), result(Phase.PLAN), result(Phase.END)],
        )
        state = loop.initial_state()
        iterations = [state.iteration]
        while not state.phase.is_terminal:
            state = loop.step(state)
            iterations.append(state.iteration)

        assert iterations == sorted(iterations)
        entries_into_plan = sum(1 for h in state.history if h.transition == Phase.PLAN)
        assert state.iteration == 1 + entries_into_plan == 3

    def test_retry_count_resets_when_build_returns_to_plan(self, tmp_path):
        loop, _, _, _ = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN)] * 2,
            build=[result(Phase.REVIEW), result(Phase.PLAN, "blocked")],
            review=[result(Phase.BUILD)],
            max_retries=5,
        )
        state = loop.initial_state()
        for _ in range(4):
            state = loop.step(state)
        assert state.phase == Phase.PLAN
        assert loop.retry_count == 0

    def test_commits_only_when_tree_is_dirty(self, tmp_path):
        snapshot = FakeSnapshot(dirty=False)
        loop, _, snap, _ = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN)],
            build=[result(Phase.REVIEW, "built it")],
            review=[result(Phase.END)],
            snapshot=snapshot,
        )
        state = loop.step(loop.initial_state())
        assert snap.commits == []

        snapshot.dirty = True
        loop.step(state)
        assert snap.commits == ["ralph: BUILD -> REVIEW\n\nbuilt it\n"]

    def test_forced_replan_commit_message_uses_rewritten_transition(self, tmp_path):
        loop, _, snap, _ = make_loop(
            tmp_path,
            review=[result(Phase.BUILD, "again")],
            max_retries=1,
            start_phase=Phase.REVIEW,
        )
        state = loop.step(loop.initial_state())
        assert state.phase == Phase.PLAN
        assert snap.commits[0].startswith("ralph: REVIEW -> PLAN\n\nForced replan")

    def test_state_is_persisted_after_every_step(self, tmp_path):
        loop, _, _, store = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN)],
            build=[result(Phase.REVIEW)],
        )
        state = loop.step(loop.initial_state())
        assert store.read_state() == state
        state = loop.step(state)
        assert store.read_state() == state


    def test_review_baseline_is_marked_once_per_plan(self, tmp_path):
        loop, _, snapshot, _ = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN), result(Phase.REVIEW, plan=PLAN)],
            build=[result(Phase.REVIEW), result(Phase.REVIEW)],
            review=[result(Phase.BUILD, "fix"), result(Phase.PLAN, "next"), result(Phase.END)],
        )

        state = loop.initial_state()
        marks: list[int] = []
        while not state.phase.is_terminal:
            state = loop.step(state)
            marks.append(snapshot.review_bases)

        # PLAN -> BUILD, BUILD -> REVIEW, REVIEW -> BUILD, BUILD -> REVIEW,
        # REVIEW -> PLAN, PLAN -> REVIEW, REVIEW -> END
        assert marks == [1, 1, 1, 1, 1, 2, 2]


class TestStartPhaseAndResume:
    def test_start_phase_override_is_persisted_before_any_step(self, tmp_path):
        loop, _, _, store = make_loop(tmp_path, start_phase=Phase.REVIEW)
        state = loop.initial_state()
        assert state.phase == Phase.REVIEW
        assert store.read_state().phase == Phase.REVIEW

    def test_starting_in_build_marks_the_review_baseline(self, tmp_path):
        loop, _, snapshot, _ = make_loop(tmp_path, start_phase=Phase.BUILD)
        loop.initial_state()
        assert snapshot.review_bases == 1

    def test_resuming_keeps_the_recorded_review_baseline(self, tmp_path):
        StateStore(tmp_path).write_state(State(phase=Phase.BUILD, iteration=2, plan=PLAN))
        loop, _, snapshot, _ = make_loop(tmp_path)
        loop.initial_state()
        assert snapshot.review_bases == 0

    def test_resume_continues_from_persisted_phase(self, tmp_path):
        store = StateStore(tmp_path)
        store.write_state(State(phase=Phase.BUILD, iteration=4, plan=PLAN))
        loop, runners, _, _ = make_loop(
            tmp_path,
            build=[result(Phase.REVIEW)],
            review=[result(Phase.END)],
        )
        final = loop.run()
        assert runners[Phase.PLAN].seen_phases == []
        assert final.iteration == 4
        assert final.plan == PLAN

    def test_malformed_state_aborts_before_any_runner(self, tmp_path):
        store = StateStore(tmp_path)
        store.state_dir.mkdir(parents=True)
        store.state_path.write_text("{oops", encoding="utf-8")
        loop, runners, _, _ = make_loop(tmp_path, plan=[result(Phase.END)])

        with pytest.raises(StateStoreError):
            loop.run()
        assert runners[Phase.PLAN].seen_phases == []

    def test_session_failure_propagates_and_keeps_last_state(self, tmp_path):
        class FailingRunner:
            def run(self, state, config):
                raise AgentSessionError("stream broke")

        store = StateStore(tmp_path)
        loop = PhaseLoop(
            Config(repo_path=tmp_path),
            store=store,
            snapshot=FakeSnapshot(),
            runners={
                Phase.PLAN: ScriptedRunner(result(Phase.BUILD, plan=PLAN)),
                Phase.BUILD: FailingRunner(),
                Phase.REVIEW: ScriptedRunner(),
            },
        )
        with pytest.raises(AgentSessionError):
            loop.run()
        persisted = store.read_state()
        assert persisted.phase == Phase.BUILD
        assert len(persisted.history) == 1


class TestMaxIterations:
    def test_stops_once_iteration_exceeds_limit(self, tmp_path):
        loop, runners, _, _ = make_loop(
            tmp_path,
            plan=[result(Phase.BUILD, plan=PLAN)] * 2,
            build=[result(Phase.REVIEW)] * 2,
            review=[result(Phase.PLAN, "next task")] * 2,
            max_iterations=2,
        )
        final = loop.run()
        assert final.phase == Phase.PLAN
        assert final.iteration == 3
        assert len(final.history) == 6
        assert runners[Phase.PLAN].results == []


def test_step_log_records_each_step(tmp_path):
    step_log = StepLog(tmp_path)
    loop, _, _, _ = make_loop(
        tmp_path,
        plan=[result(Phase.BUILD, plan=PLAN)],
        build=[result(Phase.REVIEW, "built")],
        review=[result(Phase.END, "ok")],
        step_log=step_log,
    )
    loop.run()

    entries = [json.loads(line) for line in step_log.path.read_text(encoding="utf-8").splitlines()]
    assert [(e["phase"], e["transition"]) for e in entries] == [
        ("PLAN", "BUILD"),
        ("BUILD", "REVIEW"),
        ("REVIEW", "END"),
    ]
    assert [e["commitSha"] for e in entries] == ["sha1", "sha2", "sha3"]
    assert all(e["committed"] for e in entries)
    assert entries[1]["reason"] == "built"


def test_build_progress_survives_across_steps(tmp_path):
    loop, _, _, _ = make_loop(
        tmp_path,
        plan=[result(Phase.BUILD, plan=PLAN)],
        build=[result(Phase.REVIEW, build=BuildProgress(steps_completed=["form"]))],
        review=[result(Phase.END)],
    )
    final = loop.run()
    assert final.build.steps_completed == ["form"]
    assert final.plan == PLAN
