"""Prompt catalog - phase instruction text loaded from YAML.

Loads ``templates.yaml`` (next to this module) and, when given, a
repository override file (``.ralph/prompts.yaml``) merged on top of the
built-in defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path
from string import Template
from typing import Any

import yaml

from ralph_loop.schemas import Phase

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"

OVERRIDE_FILE = "prompts.yaml"
"""Name of the per-repository override file inside ``.ralph/``."""


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level must be a mapping", path)
        return {}
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class PromptCatalog:
    """Serves the per-phase instruction fragments.

    Usage::

        catalog = PromptCatalog(extra_path=repo / ".ralph" / "prompts.yaml")
        role = catalog.role(Phase.PLAN)
        task = catalog.task(Phase.PLAN, target_document="docs/PM.md")
    """

    def __init__(self, extra_path: Path | None = None) -> None:
        self._data: dict[str, Any] = {}
        self._extra_path = extra_path
        self._load()

    def _load(self) -> None:
        """Load built-in templates, then merge the override file if present."""
        self._data = _load_yaml(_BUILTIN_YAML)
        extra = self._extra_path
        if extra is not None and extra.is_file():
            overrides = _load_yaml(extra)
            if overrides:
                self._data = _deep_merge(self._data, overrides)
                logger.info("Loaded prompt overrides from %s", extra)

    # -- Phase prompts ---------------------------------------------------------

    def _phase_entry(self, phase: Phase) -> dict[str, Any]:
        entry = self._data.get("phases", {}).get(phase.value, {})
        return entry if isinstance(entry, dict) else {}

    def role(self, phase: Phase) -> str:
        """Return the one-line role statement for *phase*."""
        return str(self._phase_entry(phase).get("role") or "").strip()

    def task(self, phase: Phase, **values: Any) -> str:
        """Return the numbered task list for *phase* with placeholders filled."""
        text = str(self._phase_entry(phase).get("task") or "").strip()
        return Template(text).safe_substitute({k: str(v) for k, v in values.items()})

    def decision_example(self, phase: Phase) -> str:
        """Return the example decision block for *phase*."""
        return str(self._phase_entry(phase).get("example") or "").strip()

    def decision_rules(self, phase: Phase) -> list[str]:
        """Return the allowed-transition notes for *phase*."""
        rules = self._phase_entry(phase).get("rules") or []
        return [str(rule).strip() for rule in rules if str(rule).strip()]

    def phase_meta(self, phase: Phase) -> dict[str, str]:
        """Return metadata (name, description) for *phase*."""
        entry = self._phase_entry(phase)
        return {
            "name": str(entry.get("name") or phase.value.title()),
            "description": str(entry.get("description") or "").strip(),
        }

    # -- Shared fragments ------------------------------------------------------

    def decision(self, key: str) -> str:
        """Return a shared decision fragment (header, intro, footer)."""
        return str(self._data.get("decision", {}).get(key) or "").strip()


# Module-level singleton for convenience
_default_catalog: PromptCatalog | None = None


def get_catalog() -> PromptCatalog:
    """Return the module-level catalog of built-in templates (lazy-loaded)."""
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = PromptCatalog()
    return _default_catalog
