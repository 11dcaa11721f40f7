"""Agent session backed by the Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from ralph_loop.agent_session import AgentSession, EventCallback
from ralph_loop.errors import AgentSessionError
from ralph_loop.runner_common import (
    coerce_int,
    execute_streaming_json_command,
    prompt_metadata,
    resolve_binary,
)
from ralph_loop.schemas import EventKind, SessionEvent, SessionResult, UsageInfo

logger = logging.getLogger(__name__)

DEFAULT_CLAUDE_BINARY = "claude"


class ClaudeCodeSession(AgentSession):
    """Spawn ``claude -p`` and consume its stream-json output.

    The prompt is written to stdin and the CLI is asked for
    ``--output-format stream-json --include-partial-messages`` so text
    arrives as incremental deltas, followed by complete assistant messages
    and one terminal ``result`` object::

        {"type": "system", "subtype": "init", "session_id": "..."}
        {"type": "stream_event", "event": {"type": "content_block_delta", ...}}
        {"type": "assistant", "message": {"content": [...]}}
        {"type": "result", "subtype": "success", "result": "...", "usage": {...}}

    Parameters
    ----------
    claude_binary:
        Path or name of the Claude Code CLI binary.
    model:
        Override the model Claude Code uses (``--model``).  Leave blank
        for the CLI default.
    timeout:
        Seconds without output before the child is killed.  ``0`` (the
        default) waits indefinitely.
    skip_permissions:
        Pass ``--dangerously-skip-permissions`` so the agent can edit files
        and run commands without interactive approval.
    env_overrides:
        Extra environment variables forwarded to the child process.
    """

    name = "Claude Code"

    def __init__(
        self,
        claude_binary: str = DEFAULT_CLAUDE_BINARY,
        *,
        model: str = "",
        timeout: int = 0,
        skip_permissions: bool = True,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.claude_binary = claude_binary
        self.model = (model or "").strip()
        self.timeout = max(0, coerce_int(timeout))
        self.skip_permissions = skip_permissions
        self.env_overrides = env_overrides or {}

    def run(
        self,
        prompt: str,
        *,
        cwd: str | Path,
        max_turns: int,
        on_event: EventCallback | None = None,
    ) -> SessionResult:
        """Execute one Claude Code session and return the aggregated result."""
        cwd = Path(cwd).resolve()
        if not cwd.is_dir():
            raise AgentSessionError(f"Working directory does not exist: {cwd}")

        cmd = self._build_command(max_turns)
        meta = prompt_metadata(prompt)
        logger.info(
            "Running Claude Code CLI (cwd=%s, max_turns=%s, prompt_len=%s, prompt_sha256=%s)",
            cwd,
            max_turns,
            meta["length_chars"],
            meta["sha256"],
        )

        start = time.monotonic()
        try:
            execution = execute_streaming_json_command(
                cmd=cmd,
                cwd=cwd,
                env={**os.environ, **self.env_overrides},
                parse_stdout_line=self._parse_line,
                process_name="Claude Code",
                stdin_text=prompt,
                timeout_seconds=self.timeout,
                on_event=on_event,
            )
        except OSError as exc:
            raise AgentSessionError(f"Failed to execute claude: {exc}") from exc

        stderr_text = execution.stderr_text
        if execution.timed_out:
            raise AgentSessionError(
                f"Claude Code produced no output for {self.timeout}s and was stopped"
                + (f": {stderr_text}" if stderr_text else "")
            )

        result = self._aggregate(execution.events, execution.exit_code, stderr_text)
        result.duration_seconds = time.monotonic() - start
        if not result.completed:
            detail = "; ".join(result.errors) or "no terminal result event"
            raise AgentSessionError(
                f"Claude Code exited with status {execution.exit_code} before finishing: {detail}"
            )
        return result

    # ------------------------------------------------------------------
    # Command building
    # ------------------------------------------------------------------

    def _build_command(self, max_turns: int) -> list[str]:
        cmd = [
            resolve_binary(self.claude_binary),
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]
        turns = coerce_int(max_turns)
        if turns > 0:
            cmd.extend(["--max-turns", str(turns)])
        if self.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    # ------------------------------------------------------------------
    # JSONL parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_line(line: str) -> SessionEvent | None:
        """Parse one line of stream-json output into a :class:`SessionEvent`.

        Returns ``None`` for lines that carry nothing the loop uses (non-JSON
        noise, tool results echoed back as ``user`` messages, non-text
        stream deltas).
        """
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line from claude: %s", line[:200])
            return None
        if not isinstance(data, dict):
            return None

        etype = str(data.get("type") or "").strip().lower()

        if etype == "stream_event":
            text = _stream_delta_text(data.get("event"))
            if text is None:
                return None
            return SessionEvent(kind=EventKind.TEXT_DELTA, raw=data, text=text)

        if etype == "assistant":
            texts, tools = _assistant_blocks(data.get("message"))
            if texts:
                return SessionEvent(
                    kind=EventKind.ASSISTANT_MESSAGE, raw=data, text=texts[-1]
                )
            if tools:
                return SessionEvent(
                    kind=EventKind.PROGRESS, raw=data, text=", ".join(f"[Tool: {t}]" for t in tools)
                )
            return None

        if etype == "system":
            subtype = str(data.get("subtype") or "")
            if subtype == "init":
                text = f"session {data.get('session_id', '?')} started"
            else:
                text = subtype
            return SessionEvent(kind=EventKind.PROGRESS, raw=data, text=text or None)

        if etype == "result":
            result = data.get("result")
            return SessionEvent(
                kind=EventKind.RESULT,
                raw=data,
                text=result if isinstance(result, str) else None,
            )

        if etype == "error" or "error" in data:
            return SessionEvent(kind=EventKind.ERROR, raw=data, text=_error_text(data))

        return None

    @staticmethod
    def _aggregate(events: list[SessionEvent], exit_code: int, stderr: str) -> SessionResult:
        """Combine parsed events into a single :class:`SessionResult`."""
        errors: list[str] = []
        if stderr:
            errors.append(stderr)

        session_id: str | None = None
        last_message = ""
        result_event: SessionEvent | None = None

        for ev in events:
            sid = ev.raw.get("session_id")
            if isinstance(sid, str) and sid:
                session_id = sid
            if ev.kind == EventKind.ASSISTANT_MESSAGE and ev.text:
                last_message = ev.text
            elif ev.kind == EventKind.ERROR:
                errors.append(ev.text or json.dumps(ev.raw))
            elif ev.kind == EventKind.RESULT:
                result_event = ev

        if result_event is None:
            return SessionResult(
                completed=False,
                exit_code=exit_code,
                final_text=last_message,
                session_id=session_id,
                events=events,
                errors=errors,
            )

        raw = result_event.raw
        subtype = str(raw.get("subtype") or "")
        success = subtype == "success" and not bool(raw.get("is_error"))
        if not success:
            reported = raw.get("errors")
            if isinstance(reported, list):
                errors.extend(str(item) for item in reported if item)
            if subtype and subtype != "success":
                errors.append(f"Claude Code finished with {subtype}")

        return SessionResult(
            completed=True,
            success=success,
            exit_code=exit_code,
            final_text=result_event.text or last_message,
            session_id=session_id,
            events=events,
            usage=_extract_usage(raw),
            errors=errors,
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def _stream_delta_text(event: Any) -> str | None:
    """Return the text of a ``content_block_delta`` text delta, else ``None``."""
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta")
    if not isinstance(delta, dict) or delta.get("type") != "text_delta":
        return None
    text = delta.get("text")
    return text if isinstance(text, str) else None


def _assistant_blocks(message: Any) -> tuple[list[str], list[str]]:
    """Split an assistant message into text blocks and tool names."""
    if not isinstance(message, dict):
        return [], []
    content = message.get("content")
    if isinstance(content, str):
        return ([content] if content else []), []
    texts: list[str] = []
    tools: list[str] = []
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                texts.append(block["text"])
            elif block.get("type") == "tool_use":
                tools.append(str(block.get("name") or "unknown"))
    return texts, tools


def _error_text(data: dict[str, Any]) -> str | None:
    for key in ("error", "message", "text"):
        val = data.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
        if isinstance(val, dict):
            nested = val.get("message") or val.get("text")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return None


def _extract_usage(data: dict[str, Any]) -> UsageInfo:
    """Extract token usage from a Claude Code result event."""
    usage_raw = data.get("usage")
    if not isinstance(usage_raw, dict):
        usage_raw = {}

    input_tokens = max(0, coerce_int(usage_raw.get("input_tokens", 0)))
    output_tokens = max(0, coerce_int(usage_raw.get("output_tokens", 0)))
    cache_read = max(0, coerce_int(usage_raw.get("cache_read_input_tokens", 0)))
    cache_creation = max(0, coerce_int(usage_raw.get("cache_creation_input_tokens", 0)))

    cost = data.get("total_cost_usd")
    try:
        cost_usd = max(0.0, float(cost)) if cost is not None else 0.0
    except (TypeError, ValueError):
        cost_usd = 0.0

    return UsageInfo(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens + cache_read + cache_creation,
        cost_usd=cost_usd,
        num_turns=max(0, coerce_int(data.get("num_turns", 0))),
    )
