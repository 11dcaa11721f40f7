"""Phase runners for the PLAN -> BUILD -> REVIEW loop."""

from __future__ import annotations

from ralph_loop.agent_session import AgentSession, EventCallback
from ralph_loop.git_tools import RepoContext
from ralph_loop.phases.base import PhaseRunner
from ralph_loop.phases.builder import Builder
from ralph_loop.phases.planner import Planner
from ralph_loop.phases.reviewer import Reviewer
from ralph_loop.prompts import PromptCatalog
from ralph_loop.schemas import Phase

__all__ = [
    "Builder",
    "PhaseRunner",
    "Planner",
    "Reviewer",
    "default_runners",
]


def default_runners(
    session: AgentSession,
    repo: RepoContext,
    *,
    on_event: EventCallback | None = None,
    catalog: PromptCatalog | None = None,
) -> dict[Phase, PhaseRunner]:
    """Return one runner per non-terminal phase, sharing *session* and *repo*."""
    return {
        Phase.PLAN: Planner(session, repo, on_event=on_event, catalog=catalog),
        Phase.BUILD: Builder(session, repo, on_event=on_event, catalog=catalog),
        Phase.REVIEW: Reviewer(session, repo, on_event=on_event, catalog=catalog),
    }
