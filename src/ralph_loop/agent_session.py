"""Abstract interface for hosted, stream-based coding-agent sessions.

A session takes one instruction and runs it to completion.  Its output is a
finite, ordered sequence of :class:`~ralph_loop.schemas.SessionEvent`
objects (text fragments, progress notices, one terminal result) that is
consumed synchronously before :meth:`AgentSession.run` returns.
"""

from __future__ import annotations

import abc
from collections.abc import Callable
from pathlib import Path

from ralph_loop.schemas import SessionEvent, SessionResult

EventCallback = Callable[[SessionEvent], None]


class AgentSession(abc.ABC):
    """Common interface for agent session backends."""

    #: Human-readable name used in log lines.
    name: str = "base"

    @abc.abstractmethod
    def run(
        self,
        prompt: str,
        *,
        cwd: str | Path,
        max_turns: int,
        on_event: EventCallback | None = None,
    ) -> SessionResult:
        """Execute one session and return its aggregated result.

        Parameters
        ----------
        prompt:
            The instruction payload.
        cwd:
            Working directory the agent operates in.
        max_turns:
            Upper bound on agent-internal tool-invocation turns.
        on_event:
            Called with every event, in arrival order.

        Implementations raise :class:`~ralph_loop.errors.AgentSessionError`
        when the session cannot be started or ends without a terminal result.
        """
