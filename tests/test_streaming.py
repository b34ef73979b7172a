"""Tests for NDJSON event parsing and the stream consumers."""

from __future__ import annotations

import json

import pytest

from spritekit.errors import StreamProtocolError
from spritekit.streaming import (
    consume_checkpoint_stream,
    consume_exec_stream,
    consume_restore_stream,
    iter_events,
    parse_event,
)


async def lines(*items):
    for item in items:
        yield item if isinstance(item, str) else json.dumps(item)


def events(*items):
    return iter_events(lines(*items))


class Collector:
    def __init__(self):
        self.chunks: list[tuple[str, str]] = []

    def __call__(self, stream_name: str, text: str) -> None:
        self.chunks.append((stream_name, text))


# ── Parsing ──────────────────────────────────────────────────────────────────


class TestParseEvent:
    def test_info_event(self):
        event = parse_event('{"type": "info", "data": "Stopping services...", "time": "2026-01-05T10:30:00Z"}')
        assert event.type == "info"
        assert event.data == "Stopping services..."
        assert event.time == "2026-01-05T10:30:00Z"

    def test_exit_event(self):
        event = parse_event('{"type": "exit", "code": 2}')
        assert event.type == "exit"
        assert event.code == 2

    def test_invalid_json_is_raw(self):
        event = parse_event("plain output")
        assert event.type == "raw"
        assert event.raw == "plain output"

    def test_non_object_is_raw(self):
        assert parse_event("[1, 2]").type == "raw"
        assert parse_event('"hello"').type == "raw"

    def test_object_without_type_is_raw(self):
        assert parse_event('{"data": "x"}').type == "raw"

    def test_structured_data_is_serialized(self):
        event = parse_event('{"type": "info", "data": {"step": 1}}')
        assert event.data == '{"step": 1}'

    def test_numeric_time_kept(self):
        event = parse_event('{"type": "exit", "code": 2, "time": 1704450600}')
        assert event.type == "exit"
        assert event.code == 2
        assert event.time == "1704450600"

    def test_non_integer_code_dropped(self):
        event = parse_event('{"type": "error", "error": "disk full", "code": "E_DISK"}')
        assert event.type == "error"
        assert event.error == "disk full"
        assert event.code is None

    def test_numeric_string_code(self):
        assert parse_event('{"type": "exit", "code": "3"}').code == 3

    def test_structured_error_is_serialized(self):
        event = parse_event('{"type": "error", "error": {"reason": "oom"}}')
        assert event.type == "error"
        assert event.error == '{"reason": "oom"}'

    async def test_blank_lines_skipped(self):
        parsed = [e async for e in events("", "  ", {"type": "info", "data": "x"})]
        assert len(parsed) == 1


# ── Checkpoint streams ───────────────────────────────────────────────────────


class TestConsumeCheckpointStream:
    async def test_returns_checkpoint_id(self, caplog):
        stream = events(
            {"type": "info", "data": "Creating checkpoint..."},
            {"type": "info", "data": "Saving filesystem state..."},
            {"type": "complete", "data": "Checkpoint v8 created"},
        )
        with caplog.at_level("INFO", logger="spritekit.streaming"):
            assert await consume_checkpoint_stream(stream) == "v8"
        assert "Saving filesystem state..." in caplog.text

    async def test_non_version_ids(self):
        stream = events({"type": "complete", "data": "Checkpoint ckpt_01HX created"})
        assert await consume_checkpoint_stream(stream) == "ckpt_01HX"

    async def test_no_complete_event(self):
        stream = events(
            {"type": "info", "data": "Creating checkpoint..."},
            {"type": "info", "data": "Saving filesystem state..."},
        )
        with pytest.raises(StreamProtocolError, match="No checkpoint id"):
            await consume_checkpoint_stream(stream)

    async def test_complete_without_id(self):
        stream = events({"type": "complete", "data": "Done"})
        with pytest.raises(StreamProtocolError):
            await consume_checkpoint_stream(stream)

    async def test_error_event(self):
        stream = events(
            {"type": "info", "data": "Creating checkpoint..."},
            {"type": "error", "error": "disk full"},
            {"type": "complete", "data": "Checkpoint v9 created"},
        )
        with pytest.raises(StreamProtocolError, match="disk full"):
            await consume_checkpoint_stream(stream)

    async def test_garbage_lines_ignored(self):
        stream = events("not json", {"type": "complete", "data": "Checkpoint v2 created"})
        assert await consume_checkpoint_stream(stream) == "v2"


# ── Restore streams ──────────────────────────────────────────────────────────


class TestConsumeRestoreStream:
    async def test_complete(self):
        stream = events(
            {"type": "info", "data": "Restoring..."},
            {"type": "complete", "data": "Restored v3"},
        )
        await consume_restore_stream(stream)

    async def test_no_complete(self):
        with pytest.raises(StreamProtocolError, match="without a completion"):
            await consume_restore_stream(events({"type": "info", "data": "Restoring..."}))

    async def test_error(self):
        with pytest.raises(StreamProtocolError, match="checkpoint not found"):
            await consume_restore_stream(events({"type": "error", "error": "checkpoint not found"}))


# ── Exec streams ─────────────────────────────────────────────────────────────


class TestConsumeExecStream:
    async def test_collects_stdout(self):
        sink = Collector()
        stream = events(
            {"type": "stdout", "data": "Hello "},
            {"type": "stdout", "data": "World\n"},
            {"type": "exit", "code": 0},
        )
        result = await consume_exec_stream(stream, sink)
        assert result.exit_code == 0
        assert result.stdout == "Hello World\n"
        assert result.stderr == ""

    async def test_forwards_chunks_in_order(self):
        sink = Collector()
        stream = events(
            {"type": "stdout", "data": "a"},
            {"type": "stderr", "data": "warn\n"},
            {"type": "stdout", "data": "b"},
            {"type": "exit", "code": 0},
        )
        result = await consume_exec_stream(stream, sink)
        assert sink.chunks == [("stdout", "a"), ("stderr", "warn\n"), ("stdout", "b")]
        assert result.stderr == "warn\n"

    async def test_nonzero_exit(self):
        result = await consume_exec_stream(
            events({"type": "stderr", "data": "boom\n"}, {"type": "exit", "code": 3}),
            Collector(),
        )
        assert result.exit_code == 3
        assert not result.ok

    async def test_raw_lines_are_stdout(self):
        sink = Collector()
        result = await consume_exec_stream(
            events("legacy output", {"type": "exit", "code": 0}), sink
        )
        assert result.stdout == "legacy output\n"
        assert sink.chunks == [("stdout", "legacy output\n")]

    async def test_stream_close_without_exit(self):
        result = await consume_exec_stream(events({"type": "stdout", "data": "x"}), Collector())
        assert result.exit_code == 0
        assert result.stdout == "x"

    async def test_stops_at_exit(self):
        result = await consume_exec_stream(
            events({"type": "exit", "code": 1}, {"type": "stdout", "data": "late"}),
            Collector(),
        )
        assert result.exit_code == 1
        assert result.stdout == ""

    async def test_exit_code_under_alternate_key(self):
        result = await consume_exec_stream(events({"type": "exit", "exit_code": 7}), Collector())
        assert result.exit_code == 7

    async def test_error_event(self):
        with pytest.raises(StreamProtocolError, match="session lost"):
            await consume_exec_stream(events({"type": "error", "error": "session lost"}), Collector())

    async def test_numeric_timestamps(self):
        sink = Collector()
        result = await consume_exec_stream(
            events(
                {"type": "stderr", "data": "boom\n", "time": 1704450600},
                {"type": "exit", "code": 2, "time": 1704450600},
            ),
            sink,
        )
        assert result.exit_code == 2
        assert result.stderr == "boom\n"
        assert result.stdout == ""
        assert sink.chunks == [("stderr", "boom\n")]

    async def test_error_event_with_string_code(self):
        with pytest.raises(StreamProtocolError, match="sandbox crashed"):
            await consume_exec_stream(
                events({"type": "error", "error": "sandbox crashed", "code": "E_CRASH"}),
                Collector(),
            )

    async def test_exit_without_usable_code(self):
        with pytest.raises(StreamProtocolError, match="numeric code"):
            await consume_exec_stream(events({"type": "exit", "code": "killed"}), Collector())
