"""Crash-safe writes for the files the loop keeps under ``.ralph/``.

The state document is replaced atomically so a reader (or a resumed run)
sees either the previous document or the new one, never a torn write.  The
step log is append-only.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from contextlib import suppress
from pathlib import Path
from typing import Any

REPLACE_ATTEMPTS = 8
REPLACE_BACKOFF_SECONDS = 0.01


def replace_with_retry(src: Path, dst: Path) -> None:
    """Move *src* over *dst*.

    Virus scanners and editors on Windows briefly hold handles on the
    destination, which surfaces as ``PermissionError``; those are retried
    with a linear backoff.  Any other ``OSError`` propagates immediately.
    """
    for attempt in range(1, REPLACE_ATTEMPTS + 1):
        try:
            src.replace(dst)
            return
        except PermissionError:
            if attempt == REPLACE_ATTEMPTS:
                raise
        time.sleep(REPLACE_BACKOFF_SECONDS * attempt)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to *path* through a synced sibling temp file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="\n") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        replace_with_retry(tmp, path)
    finally:
        # Gone already after a successful replace.
        with suppress(OSError):
            tmp.unlink(missing_ok=True)


def append_jsonl(path: Path, record: dict[str, Any], *, encoding: str = "utf-8") -> None:
    """Append *record* as one compact JSON line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    with path.open("a", encoding=encoding) as handle:
        handle.write(line + "\n")
