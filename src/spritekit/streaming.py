"""NDJSON progress streams returned by long-running Sprites operations.

Checkpoint and restore streams carry ``info`` / ``error`` / ``complete``
events; exec streams carry ``stdout`` / ``stderr`` / ``exit``::

    {"type": "info", "data": "Saving filesystem state...", "time": "2026-01-05T10:30:00Z"}
    {"type": "complete", "data": "Checkpoint v8 created", "time": "2026-01-05T10:30:00Z"}

:func:`iter_events` turns response lines into a lazy, forward-only sequence
of :class:`StreamEvent`.  It ends when the connection closes and cannot be
restarted; retrying means issuing a fresh request.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

from spritekit.errors import StreamProtocolError
from spritekit.models import ExecResult, StreamEvent

logger = logging.getLogger(__name__)

CHECKPOINT_ID_RE = re.compile(r"Checkpoint (\S+) created")

# Receives ("stdout" | "stderr", text) for each chunk as it arrives
OutputSink = Callable[[str, str], None]


def write_to_console(stream_name: str, text: str) -> None:
    stream = sys.stderr if stream_name == "stderr" else sys.stdout
    stream.write(text)
    stream.flush()


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def parse_event(line: str) -> StreamEvent:
    """Parse one NDJSON line; anything that is not an event object becomes ``raw``.

    Once a line carries a string ``type`` it stays that event type: odd field
    values are coerced (structured ``data``/``error`` to JSON text, ``time`` to
    text, a non-integer ``code`` to ``None``) instead of dropping the event.
    """
    try:
        payload = json.loads(line)
    except ValueError:
        return StreamEvent(type="raw", raw=line)
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        return StreamEvent(type="raw", raw=line)

    for key in ("data", "error", "raw"):
        if key in payload:
            payload[key] = _text(payload[key])
    if payload.get("time") is not None and not isinstance(payload["time"], str):
        payload["time"] = str(payload["time"])
    if "code" in payload:
        payload["code"] = _int_or_none(payload["code"])
    return StreamEvent.model_validate(payload)


async def iter_events(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    async for line in lines:
        if not line.strip():
            continue
        yield parse_event(line)


# ── Progress streams (checkpoint / restore) ──────────────────────────────────


def _progress(event: StreamEvent, operation: str) -> bool:
    """Handle one progress event; ``True`` when it is the ``complete`` event."""
    if event.type == "complete":
        return True
    if event.type == "error":
        raise StreamProtocolError(f"{operation} failed: {event.error or event.data or 'unknown error'}")
    if event.type == "info":
        logger.info("%s: %s", operation, event.data or "")
    else:
        logger.debug("%s: ignoring %s event", operation, event.type)
    return False


async def consume_checkpoint_stream(events: AsyncIterable[StreamEvent]) -> str:
    """Consume a checkpoint-create stream and return the new checkpoint's id.

    Raises:
        StreamProtocolError: On an ``error`` event, or if the stream closes
            before a ``complete`` event naming the checkpoint.
    """
    async for event in events:
        if not _progress(event, "Checkpoint"):
            continue
        match = CHECKPOINT_ID_RE.search(event.data or "")
        if match:
            return match[1]
        logger.warning("Checkpoint: unrecognized completion message %r", event.data)
    raise StreamProtocolError("No checkpoint id found in stream")


async def consume_restore_stream(events: AsyncIterable[StreamEvent]) -> None:
    """Consume a restore stream; returns once ``complete`` is seen.

    Raises:
        StreamProtocolError: On an ``error`` event or a stream without ``complete``.
    """
    async for event in events:
        if _progress(event, "Restore"):
            return
    raise StreamProtocolError("Restore stream ended without a completion event")


# ── Exec streams ─────────────────────────────────────────────────────────────


def _exit_code(event: StreamEvent) -> int:
    if event.code is not None:
        return event.code
    extra = event.model_extra or {}
    for candidate in (extra.get("exit_code"), extra.get("exitCode"), event.data):
        code = _int_or_none(candidate)
        if code is not None:
            return code
    raise StreamProtocolError(f"Exit event without a numeric code: {event.model_dump_json()}")


async def consume_exec_stream(
    events: AsyncIterable[StreamEvent],
    on_output: OutputSink | None = None,
) -> ExecResult:
    """Forward output as it arrives and collect it into an :class:`ExecResult`.

    Non-JSON lines count as stdout.  A stream that closes without an
    ``exit`` event resolves with exit code 0.

    Raises:
        StreamProtocolError: On an ``error`` event.
    """
    sink = on_output or write_to_console
    stdout: list[str] = []
    stderr: list[str] = []
    exit_code: int | None = None

    async for event in events:
        if event.type in ("stdout", "stderr"):
            text = event.data or ""
            (stdout if event.type == "stdout" else stderr).append(text)
            sink(event.type, text)
        elif event.type == "raw":
            text = f"{event.raw}\n"
            stdout.append(text)
            sink("stdout", text)
        elif event.type == "exit":
            exit_code = _exit_code(event)
            break
        elif event.type == "error":
            raise StreamProtocolError(f"Exec failed: {event.error or event.data or 'unknown error'}")
        else:
            logger.debug("Exec: ignoring %s event", event.type)

    if exit_code is None:
        logger.warning("Exec stream closed without an exit event; assuming exit code 0")
        exit_code = 0

    return ExecResult(exit_code=exit_code, stdout="".join(stdout), stderr="".join(stderr))
