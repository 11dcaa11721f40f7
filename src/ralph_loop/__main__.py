"""CLI entrypoint for Ralph Loop."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from ralph_loop.errors import RalphError
from ralph_loop.schemas import (
    DEFAULT_TARGET_DOCUMENT,
    Config,
    EventKind,
    Phase,
    SessionEvent,
    State,
)
from ralph_loop.state_store import StateStore

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so it's found regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser."""
    p = argparse.ArgumentParser(
        prog="ralph-loop",
        description="Ralph Loop - drive a coding agent through PLAN -> BUILD -> REVIEW iterations.",
    )
    p.add_argument(
        "command",
        nargs="?",
        choices=["run", "status", "reset"],
        default="run",
        help="run: drive the loop (default); status: show saved state; reset: clear saved state.",
    )
    p.add_argument(
        "--repo",
        type=str,
        default=".",
        help="Path inside the target git repository (default: current directory).",
    )
    p.add_argument(
        "--max-retries",
        type=int,
        default=3,
        help="REVIEW -> BUILD retries before a forced replan (default: 3).",
    )
    p.add_argument(
        "--max-turns",
        type=int,
        default=50,
        help="Turn budget passed to every agent session (default: 50).",
    )
    p.add_argument(
        "--target-doc",
        type=str,
        default=DEFAULT_TARGET_DOCUMENT,
        help=f"Project document the planner reads (default: {DEFAULT_TARGET_DOCUMENT}).",
    )
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Run phases but never commit checkpoints.",
    )
    p.add_argument(
        "--phase",
        type=str.upper,
        choices=[phase.value for phase in Phase],
        default=None,
        help=(
            "Start from this phase. Also overrides the phase saved by an earlier "
            "run, and the override is persisted."
        ),
    )
    p.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Stop once this many iterations have completed (default: unbounded).",
    )
    p.add_argument(
        "--claude-bin",
        type=str,
        default=os.environ.get("RALPH_CLAUDE_BIN", "claude"),
        help="Path to the Claude Code CLI binary (default: $RALPH_CLAUDE_BIN or claude).",
    )
    p.add_argument(
        "--model",
        type=str,
        default=os.environ.get("RALPH_MODEL", ""),
        help="Model passed to the agent (default: $RALPH_MODEL or the CLI default).",
    )
    p.add_argument(
        "--timeout",
        type=int,
        default=0,
        help="Agent inactivity timeout in seconds; 0 disables it (default: 0).",
    )
    p.add_argument(
        "--json",
        action="store_true",
        help="status: print the raw state document.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup --------------------------------------------------------
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        repo = _resolve_repo(args.repo)
        if repo is None:
            return 1
        if args.command == "status":
            return _show_status(repo, as_json=args.json)
        if args.command == "reset":
            return _reset_state(repo)
        return _run_loop(args, repo)
    except RalphError as exc:
        logger.error("%s", exc)
        print(f"\nError: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted. Saved state is kept for resumption.", file=sys.stderr)
        return 130


def _resolve_repo(repo_arg: str) -> Path | None:
    """Return the top-level directory of the git repository at *repo_arg*."""
    from ralph_loop.git_tools import repo_root

    path = Path(repo_arg).resolve()
    if not path.is_dir():
        print(f"Error: repo path does not exist: {path}", file=sys.stderr)
        return None
    return repo_root(path)


def _echo_event(event: SessionEvent) -> None:
    """Stream agent text to stdout as it arrives."""
    if event.kind is EventKind.TEXT_DELTA and event.text:
        sys.stdout.write(event.text)
        sys.stdout.flush()


def _run_loop(args: argparse.Namespace, repo: Path) -> int:
    """Build the collaborators and run the phase loop to completion."""
    try:
        config = Config(
            max_retries=args.max_retries,
            max_turns=args.max_turns,
            target_document=Path(args.target_doc),
            dry_run=args.dry_run,
            start_phase=Phase(args.phase) if args.phase else None,
            repo_path=repo,
            max_iterations=args.max_iterations,
        )
    except ValidationError as exc:
        print(f"Error: invalid configuration:\n{exc}", file=sys.stderr)
        return 1

    if not (repo / config.target_document).is_file():
        logger.warning("Target document %s not found in %s", config.target_document, repo)

    from ralph_loop.claude_code import ClaudeCodeSession
    from ralph_loop.git_tools import GitSnapshot
    from ralph_loop.loop import PhaseLoop
    from ralph_loop.phases import default_runners
    from ralph_loop.prompts import OVERRIDE_FILE, PromptCatalog
    from ralph_loop.step_log import StepLog

    session = ClaudeCodeSession(
        claude_binary=args.claude_bin,
        model=args.model,
        timeout=args.timeout,
    )
    snapshot = GitSnapshot(repo)
    logger.info("Repository %s (branch %s)", repo, snapshot.current_branch())
    store = StateStore(repo)
    catalog = PromptCatalog(extra_path=store.state_dir / OVERRIDE_FILE)
    loop = PhaseLoop(
        config,
        store=store,
        snapshot=snapshot,
        runners=default_runners(session, snapshot, on_event=_echo_event, catalog=catalog),
        step_log=StepLog(repo),
    )

    state = loop.run()
    _print_summary(state, store)
    return 0


def _show_status(repo: Path, *, as_json: bool = False) -> int:
    """Print the persisted state without running anything."""
    store = StateStore(repo)
    state = store.read_state()
    if as_json:
        print(json.dumps(state.model_dump(mode="json", by_alias=True), indent=2))
        return 0
    if not store.exists():
        print(f"\n  No saved state at {store.state_path}; a run would start in PLAN.\n")
        return 0
    _print_summary(state, store)
    return 0


def _reset_state(repo: Path) -> int:
    """Overwrite the persisted state with a fresh default."""
    store = StateStore(repo)
    store.reset_state()
    print(f"State reset: {store.state_path}")
    return 0


def _print_summary(state: State, store: StateStore) -> None:
    """Print a human-readable summary of *state*."""
    print("\n" + "=" * 60)
    print("  Ralph Loop - State Summary")
    print("=" * 60)
    print(f"  Phase:       {state.phase.value}")
    print(f"  Iteration:   {state.iteration}")
    print(f"  Steps:       {len(state.history)}")
    print(f"  Plan:        {state.plan.task if state.plan else '-'}")
    if state.review is not None:
        verdict = "approved" if state.review.approved else "not approved"
        print(f"  Review:      {verdict} ({len(state.review.issues)} issue(s))")
    print(f"  Updated:     {state.updated_at}")
    print(f"  State file:  {store.state_path}")
    print("=" * 60)

    recent = state.history[-10:]
    if recent:
        print(f"\n  {'#':>3}  {'From':<7}  {'To':<7}  Reason")
        print(f"  {'-' * 3}  {'-' * 7}  {'-' * 7}  {'-' * 40}")
        offset = len(state.history) - len(recent)
        for idx, record in enumerate(recent, start=offset + 1):
            reason = record.reason.splitlines()[0] if record.reason else ""
            if len(reason) > 60:
                reason = reason[:57] + "..."
            print(
                f"  {idx:>3}  {record.phase.value:<7}  {record.transition.value:<7}  {reason}"
            )
    print()


if __name__ == "__main__":
    sys.exit(main())
