"""Durable storage for the loop state document.

The state lives at ``<repo>/.ralph/state.json``.  A missing file means a
fresh run; anything present but unreadable is fatal, because resuming from a
guessed phase would let the loop act on an undefined state.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from ralph_loop.errors import StateStoreError
from ralph_loop.file_io import atomic_write_text
from ralph_loop.schemas import STATE_SCHEMA_VERSION, State

logger = logging.getLogger(__name__)

STATE_DIR = ".ralph"
STATE_FILE = "state.json"


def default_state() -> State:
    """Return the initial state of a fresh run."""
    return State()


class StateStore:
    """Load and persist :class:`State` at a fixed location under a repository."""

    def __init__(self, repo_path: str | Path) -> None:
        self.repo_path = Path(repo_path).resolve()

    @property
    def state_dir(self) -> Path:
        return self.repo_path / STATE_DIR

    @property
    def state_path(self) -> Path:
        return self.state_dir / STATE_FILE

    def exists(self) -> bool:
        return self.state_path.is_file()

    def read_state(self) -> State:
        """Return the persisted state, or the default state when none exists.

        Raises :class:`StateStoreError` when the document exists but is
        empty, not JSON, fails validation, or carries an unknown
        ``schemaVersion``.
        """
        path = self.state_path
        if not path.exists():
            logger.debug("No state file at %s; starting fresh", path)
            return default_state()

        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateStoreError(f"Could not read state file {path}: {exc}") from exc
        if not raw.strip():
            raise StateStoreError(f"State file is empty: {path}")

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"State file is not valid JSON ({path}): {exc}") from exc
        if not isinstance(payload, dict):
            raise StateStoreError(f"State file must contain a JSON object: {path}")

        version = payload.get("schemaVersion", STATE_SCHEMA_VERSION)
        if version != STATE_SCHEMA_VERSION:
            raise StateStoreError(
                f"Unsupported state schema version {version!r} in {path} "
                f"(expected {STATE_SCHEMA_VERSION}); reset the state to continue"
            )

        try:
            return State.model_validate(payload)
        except ValidationError as exc:
            raise StateStoreError(f"State file failed validation ({path}): {exc}") from exc

    def write_state(self, next_state: State) -> State:
        """Persist *next_state* atomically and return it unchanged."""
        payload = next_state.model_dump_json(by_alias=True, indent=2)
        try:
            atomic_write_text(self.state_path, payload + "\n")
        except OSError as exc:
            raise StateStoreError(f"Could not write state file {self.state_path}: {exc}") from exc
        return next_state

    def reset_state(self) -> State:
        """Overwrite any persisted state with the default state."""
        logger.info("Resetting loop state at %s", self.state_path)
        return self.write_state(default_state())
