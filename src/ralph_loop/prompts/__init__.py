"""Phase instructions: YAML-backed catalog plus the per-phase builders."""

from ralph_loop.prompts.builders import (
    MAX_DIFF_CHARS,
    build_build_prompt,
    build_plan_prompt,
    build_review_prompt,
)
from ralph_loop.prompts.catalog import OVERRIDE_FILE, PromptCatalog, get_catalog

__all__ = [
    "MAX_DIFF_CHARS",
    "OVERRIDE_FILE",
    "PromptCatalog",
    "build_build_prompt",
    "build_plan_prompt",
    "build_review_prompt",
    "get_catalog",
]
