#!/usr/bin/env python3
"""Example: run a single Claude Code session and print the result.

Usage:
    python examples/run_once.py /path/to/repo "Summarize the open TODOs in this repo"
"""

from __future__ import annotations

import sys
from pathlib import Path

# Allow running from the repo root without installing the package
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from ralph_loop.claude_code import ClaudeCodeSession
from ralph_loop.schemas import EventKind, SessionEvent


def _echo(event: SessionEvent) -> None:
    if event.kind is EventKind.TEXT_DELTA and event.text:
        print(event.text, end="", flush=True)


def main() -> None:
    if len(sys.argv) < 3:
        print("Usage: run_once.py <repo_path> <prompt>")
        sys.exit(1)

    repo_path = sys.argv[1]
    prompt = sys.argv[2]

    session = ClaudeCodeSession(timeout=300)
    print(f"Running Claude Code on {repo_path!r} ...")
    result = session.run(prompt, cwd=repo_path, max_turns=10, on_event=_echo)

    print(f"\n\nSuccess:       {result.success}")
    print(f"Exit code:     {result.exit_code}")
    print(f"Duration:      {result.duration_seconds:.1f}s")
    print(f"Events:        {len(result.events)}")
    print(f"Session:       {result.session_id}")
    print(f"Errors:        {result.errors}")
    print(f"\nFinal text:\n{result.final_text[:500]}")
    print(f"\nUsage: {result.usage.model_dump_json(indent=2)}")


if __name__ == "__main__":
    main()
