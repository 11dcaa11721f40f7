"""Shared machinery for phase runners.

A runner composes one instruction, drives exactly one agent session to
completion, and decodes the transition decision from the final response.
Undecodable output falls back to the runner's conservative default instead
of failing the run; a session that breaks off is an
:class:`~ralph_loop.errors.AgentSessionError` and propagates.
"""

from __future__ import annotations

import abc
import logging
from typing import ClassVar, Generic, TypeVar

from ralph_loop.agent_session import AgentSession, EventCallback
from ralph_loop.decisions import Decision, decode_decision
from ralph_loop.errors import DecisionError
from ralph_loop.git_tools import RepoContext
from ralph_loop.prompts import PromptCatalog, get_catalog
from ralph_loop.schemas import Config, Phase, PhaseResult, SessionResult, State

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=Decision)


class PhaseRunner(abc.ABC, Generic[D]):
    """Base class for the PLAN, BUILD and REVIEW runners."""

    phase: ClassVar[Phase]
    decision_schema: ClassVar[type[Decision]]

    def __init__(
        self,
        session: AgentSession,
        repo: RepoContext,
        *,
        on_event: EventCallback | None = None,
        catalog: PromptCatalog | None = None,
    ) -> None:
        self.session = session
        self.repo = repo
        self.on_event = on_event
        self.catalog = catalog or get_catalog()
        self.last_session: SessionResult | None = None

    def run(self, state: State, config: Config) -> PhaseResult:
        """Run one session for this phase and return the validated result."""
        prompt = self.build_prompt(state, config)
        result = self.session.run(
            prompt,
            cwd=config.repo_path,
            max_turns=config.max_turns,
            on_event=self.on_event,
        )
        self.last_session = result
        if not result.success:
            logger.warning(
                "%s session finished unsuccessfully: %s",
                self.phase.value,
                "; ".join(result.errors) or "no details",
            )

        try:
            decision = decode_decision(result.final_text, self.decision_schema)
        except DecisionError as exc:
            logger.warning("%s decision could not be decoded: %s", self.phase.value, exc)
            return self.fallback(state, str(exc))
        return self.to_result(state, decision)  # type: ignore[arg-type]

    @abc.abstractmethod
    def build_prompt(self, state: State, config: Config) -> str:
        """Compose the instruction sent to the agent."""

    @abc.abstractmethod
    def to_result(self, state: State, decision: D) -> PhaseResult:
        """Translate a validated decision into a :class:`PhaseResult`."""

    @abc.abstractmethod
    def fallback(self, state: State, error: str) -> PhaseResult:
        """Return the conservative default used when decoding fails."""

    def _fallback_reason(self, target: Phase, error: str) -> str:
        return (
            f"{self.phase.value} decision could not be parsed ({error}); "
            f"defaulting to {target.value}"
        )
