"""Exception hierarchy shared by the loop and its collaborators."""

from __future__ import annotations


class RalphError(RuntimeError):
    """Base class for fatal loop errors."""


class StateStoreError(RalphError):
    """Raised when the persisted state document cannot be read or written."""


class GitError(RalphError):
    """Raised when a git command fails unexpectedly."""


class AgentSessionError(RalphError):
    """Raised when an agent session fails to deliver a terminal result."""


class DecisionError(ValueError):
    """Raised when a transition decision cannot be extracted from agent output.

    Not fatal: phase runners absorb it by falling back to a default transition.
    """
