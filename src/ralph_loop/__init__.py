"""Ralph Loop - drive a coding agent through PLAN -> BUILD -> REVIEW iterations."""

from importlib.metadata import PackageNotFoundError, version

from ralph_loop.schemas import Config, Phase, PhaseResult, State

__all__ = ["Config", "Phase", "PhaseResult", "State"]

try:
    __version__ = version("ralph-loop")
except PackageNotFoundError:
    __version__ = "0.0.0"
