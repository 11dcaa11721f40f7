#!/usr/bin/env python3
"""Example: drive a bounded number of PLAN -> BUILD -> REVIEW iterations.

Usage:
    python examples/run_loop.py /path/to/repo --iterations 2 --dry-run
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Allow running from the repo root without installing the package
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from ralph_loop.claude_code import ClaudeCodeSession
from ralph_loop.git_tools import GitSnapshot, repo_root
from ralph_loop.loop import PhaseLoop
from ralph_loop.phases import default_runners
from ralph_loop.schemas import Config
from ralph_loop.state_store import StateStore
from ralph_loop.step_log import StepLog


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Ralph phase loop.")
    parser.add_argument("repo", help="Path to the target repo")
    parser.add_argument("--iterations", type=int, default=2, help="Max iterations (default 2)")
    parser.add_argument("--max-retries", type=int, default=3, help="Retries before replan")
    parser.add_argument("--dry-run", action="store_true", help="Never commit checkpoints")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )

    repo = repo_root(args.repo)
    config = Config(
        repo_path=repo,
        max_iterations=args.iterations,
        max_retries=args.max_retries,
        dry_run=args.dry_run,
    )
    snapshot = GitSnapshot(repo)
    loop = PhaseLoop(
        config,
        store=StateStore(repo),
        snapshot=snapshot,
        runners=default_runners(ClaudeCodeSession(), snapshot),
        step_log=StepLog(repo),
    )

    state = loop.run()

    print(f"\nDone! phase={state.phase.value}, iteration={state.iteration}, "
          f"steps={len(state.history)}")
    print(f"State saved to: {loop.store.state_path}")


if __name__ == "__main__":
    main()
