"""Subprocess plumbing for CLI-backed agent sessions.

A session child writes one JSON object per stdout line.  Reader threads
forward raw lines into a single queue; parsing and the caller's event
callback always run on the calling thread, so callbacks observe events in
exactly the order the child produced them.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import queue
import shutil
import subprocess
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from ralph_loop.schemas import SessionEvent

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

MAX_STDERR_LINES = 2_000
_POLL_SECONDS = 0.25
_TERMINATE_GRACE_SECONDS = 1.5
_EXIT_WAIT_SECONDS = 5.0


def resolve_binary(name: str) -> str:
    """Resolve *name* via ``PATH`` when possible; otherwise return it expanded."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in "'\"":
        # Paths pasted with shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads; ``0`` on failure."""
    if value is None:
        return 0
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        try:
            return int(value)
        except ValueError:
            pass
        try:
            number = float(value)
        except ValueError:
            return 0
        return int(number) if math.isfinite(number) else 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def prompt_metadata(prompt: str) -> dict[str, int | str]:
    """Return length and a short digest of *prompt* for log lines."""
    text = str(prompt or "")
    return {
        "length_chars": len(text),
        "sha256": hashlib.sha256(text.encode("utf-8")).hexdigest()[:16],
    }


@dataclass(slots=True)
class StreamExecutionResult:
    """Everything observed from one streamed child process."""

    events: list[SessionEvent]
    stderr_lines: list[str]
    exit_code: int
    timed_out: bool

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines).strip()


class _LinePump:
    """Feed the child's stdin and funnel its stdout/stderr lines into one queue.

    Items are ``(stream_name, line)``; ``line is None`` marks that stream
    as closed.
    """

    def __init__(self, proc: subprocess.Popen[str], stdin_text: str | None) -> None:
        self.lines: queue.Queue[tuple[str, str | None]] = queue.Queue()
        self.open_streams = {"stdout", "stderr"}
        self._threads = [
            threading.Thread(target=self._read, args=("stdout", proc.stdout), daemon=True),
            threading.Thread(target=self._read, args=("stderr", proc.stderr), daemon=True),
        ]
        if stdin_text is not None and proc.stdin is not None:
            self._threads.append(
                threading.Thread(target=self._feed, args=(proc.stdin, stdin_text), daemon=True)
            )

    def start(self) -> None:
        for thread in self._threads:
            thread.start()

    def join(self) -> None:
        for thread in self._threads:
            thread.join(timeout=1.0)

    @property
    def alive(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def get(self, timeout: float) -> tuple[str, str] | None:
        """Return the next line, or ``None`` if nothing arrived within *timeout*.

        Close markers are consumed here and update :attr:`open_streams`.
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                name, line = self.lines.get(timeout=remaining)
            except queue.Empty:
                return None
            if line is None:
                self.open_streams.discard(name)
                if not self.open_streams:
                    return None
                continue
            return name, line

    def leftovers(self) -> list[tuple[str, str]]:
        """Return lines still queued after the child exited."""
        items: list[tuple[str, str]] = []
        while True:
            try:
                name, line = self.lines.get_nowait()
            except queue.Empty:
                return items
            if line is not None:
                items.append((name, line))

    def _read(self, name: str, stream: IO[str] | None) -> None:
        try:
            if stream is not None:
                for raw in stream:
                    self.lines.put((name, raw.rstrip("\r\n")))
        finally:
            self.lines.put((name, None))

    @staticmethod
    def _feed(stream: IO[str], text: str) -> None:
        try:
            stream.write(text if text.endswith("\n") else text + "\n")
            stream.flush()
        except OSError:
            # The child exited before reading its prompt; its exit status says why.
            logger.debug("stdin write to agent session failed", exc_info=True)
        finally:
            with suppress(OSError):
                stream.close()


def execute_streaming_json_command(
    *,
    cmd: list[str],
    cwd: Path,
    env: dict[str, str],
    parse_stdout_line: Callable[[str], SessionEvent | None],
    process_name: str,
    stdin_text: str | None = None,
    timeout_seconds: int = 0,
    on_event: Callable[[SessionEvent], None] | None = None,
) -> StreamExecutionResult:
    """Run *cmd*, parse each stdout line, and hand events to *on_event* as they arrive.

    ``timeout_seconds`` is an inactivity timeout: the child is stopped once
    that many seconds pass without a line on either stream.  ``0`` waits
    indefinitely.  Raises ``OSError`` when the child cannot be started.
    """
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        **_isolation_kwargs(),
    )
    pump = _LinePump(proc, stdin_text)
    events: list[SessionEvent] = []
    stderr_lines: list[str] = []

    def handle(name: str, line: str) -> None:
        if not line:
            return
        if name == "stderr":
            if len(stderr_lines) < MAX_STDERR_LINES:
                stderr_lines.append(line)
            return
        event = parse_stdout_line(line)
        if event is not None:
            events.append(event)
            if on_event is not None:
                on_event(event)

    timed_out = False
    pump.start()
    try:
        last_output = time.monotonic()
        while pump.open_streams:
            wait = _POLL_SECONDS
            if timeout_seconds > 0:
                idle = time.monotonic() - last_output
                if idle >= timeout_seconds:
                    timed_out = True
                    break
                wait = max(0.05, min(wait, timeout_seconds - idle))
            item = pump.get(wait)
            if item is None:
                if proc.poll() is not None and not pump.alive:
                    break
                continue
            last_output = time.monotonic()
            handle(*item)

        if timed_out:
            logger.warning(
                "%s produced no output for %ss; stopping it", process_name, timeout_seconds
            )
            _stop_process(proc, process_name)
        _wait_for_exit(proc)
        for name, line in pump.leftovers():
            handle(name, line)
    except BaseException:
        # Ctrl+C or a failing callback must not leave the child running.
        _stop_process(proc, process_name)
        raise
    finally:
        pump.join()
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None:
                with suppress(OSError):
                    stream.close()

    return StreamExecutionResult(
        events=events,
        stderr_lines=stderr_lines,
        exit_code=proc.returncode if proc.returncode is not None else -1,
        timed_out=timed_out,
    )


# ---------------------------------------------------------------------------
# Process control
# ---------------------------------------------------------------------------


def _isolation_kwargs() -> dict[str, object]:
    """Keep the child out of the parent's console signal group.

    Ctrl+C in the terminal then reaches only the loop, which stops the
    child itself.
    """
    if os.name == "nt":
        flags = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        flags |= int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def _signal_group(proc: subprocess.Popen[str], *, force: bool) -> None:
    """Signal the child and, on POSIX, every process in its session."""
    if os.name != "nt" and proc.pid > 0:
        with suppress(OSError):
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL if force else signal.SIGTERM)
    with suppress(OSError):
        if force:
            proc.kill()
        else:
            proc.terminate()


def _stop_process(proc: subprocess.Popen[str], process_name: str) -> None:
    """Terminate the child, escalating to a kill if it lingers."""
    if proc.poll() is not None:
        return
    _signal_group(proc, force=False)
    try:
        proc.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("%s ignored terminate; killing it", process_name)
        _signal_group(proc, force=True)


def _wait_for_exit(proc: subprocess.Popen[str]) -> None:
    try:
        proc.wait(timeout=_EXIT_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait(timeout=_EXIT_WAIT_SECONDS)
