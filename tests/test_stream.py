"""Tests for subagents.orchestration.stream — NDJSON parsing and progress folding."""

from __future__ import annotations

import asyncio
import json

import pytest

from subagents.orchestration.models import Progress
from subagents.orchestration.stream import (
    EventStreamParser,
    ProgressTracker,
    WorkerEvent,
    extract_text_from_content,
    extract_tool_args_preview,
    get_final_output,
    iter_events,
)


def _line(event: dict) -> bytes:
    return (json.dumps(event, ensure_ascii=False) + "\n").encode()


def _event(payload: dict) -> WorkerEvent:
    return WorkerEvent(kind=payload["type"], payload=payload, raw=json.dumps(payload))


class TestEventStreamParser:
    def test_partial_lines_are_buffered(self):
        parser = EventStreamParser()
        data = _line({"type": "a"}) + _line({"type": "b"})
        first = list(parser.feed(data[:5]))
        rest = list(parser.feed(data[5:]))
        assert first == []
        assert [e.kind for e in rest] == ["a", "b"]

    def test_multibyte_split_across_chunks(self):
        parser = EventStreamParser()
        data = _line({"type": "t", "text": "héllo"})
        split = data.index("é".encode()) + 1
        events = list(parser.feed(data[:split])) + list(parser.feed(data[split:]))
        assert events[0].payload["text"] == "héllo"

    def test_non_json_lines_skipped_but_recorded(self):
        parser = EventStreamParser()
        events = list(parser.feed(b"garbage\n[1,2]\n\n" + _line({"type": "ok"})))
        assert [e.kind for e in events] == ["ok"]
        assert parser.raw_lines[0] == "garbage"

    def test_flush_emits_unterminated_line(self):
        parser = EventStreamParser()
        assert list(parser.feed(b'{"type": "last"}')) == []
        assert [e.kind for e in parser.flush()] == ["last"]


@pytest.mark.asyncio
async def test_iter_events_reads_until_eof():
    reader = asyncio.StreamReader()
    reader.feed_data(_line({"type": "one"}) + b'{"type": "two"}')
    reader.feed_eof()
    seen: list[bytes] = []
    kinds = [e.kind async for e in iter_events(reader, EventStreamParser(), on_chunk=seen.append)]
    assert kinds == ["one", "two"]
    assert b"".join(seen).startswith(b'{"type": "one"}')


class TestMessageHelpers:
    def test_extract_text_shapes(self):
        assert extract_text_from_content("plain") == "plain"
        assert extract_text_from_content(None) == ""
        assert (
            extract_text_from_content(
                [
                    {"type": "text", "text": "a"},
                    {"type": "image"},
                    {"type": "tool_result", "content": [{"type": "text", "text": "b"}]},
                ]
            )
            == "a\nb"
        )

    def test_final_output_uses_last_assistant_and_last_text_part(self):
        messages = [
            {"role": "assistant", "content": [{"type": "text", "text": "early"}]},
            {"role": "toolResult", "content": [{"type": "text", "text": "tool"}]},
            {
                "role": "assistant",
                "content": [{"type": "text", "text": "first"}, {"type": "text", "text": "final"}],
            },
            {"role": "toolResult", "content": "ignored"},
        ]
        assert get_final_output(messages) == "final"
        assert get_final_output([]) == ""

    def test_tool_args_preview(self):
        assert extract_tool_args_preview({"command": "ls -la"}) == "ls -la"
        assert extract_tool_args_preview({"path": "x" * 80}).endswith("...")
        assert extract_tool_args_preview({"other": "v"}) == "other=v"
        assert extract_tool_args_preview({"server": "gh", "tool": "search", "args": "q"}) == "gh/search q"
        assert extract_tool_args_preview("nope") == ""


class TestProgressTracker:
    def _tracker(self) -> ProgressTracker:
        return ProgressTracker(progress=Progress(agent="scout", status="running"))

    def test_tool_lifecycle(self):
        tracker = self._tracker()
        assert tracker.apply(_event({"type": "tool_execution_start", "toolName": "bash", "args": {"command": "ls"}}))
        assert tracker.progress.current_tool == "bash"
        assert tracker.progress.current_tool_args == "ls"
        assert not tracker.apply(_event({"type": "tool_execution_end"}))
        assert tracker.progress.current_tool is None
        assert tracker.progress.recent_tools[0].tool == "bash"
        assert tracker.progress.tool_count == 1

    def test_recent_tools_bounded(self):
        tracker = self._tracker()
        for i in range(8):
            tracker.apply(_event({"type": "tool_execution_start", "toolName": f"t{i}"}))
            tracker.apply(_event({"type": "tool_execution_end"}))
        assert [t.tool for t in tracker.progress.recent_tools] == ["t7", "t6", "t5", "t4", "t3"]

    def test_assistant_message_accumulates_usage(self):
        tracker = self._tracker()
        message = {
            "role": "assistant",
            "content": [{"type": "text", "text": "done"}],
            "model": "m1",
            "usage": {"input": 10, "output": 5, "cacheRead": 2, "cost": {"total": 0.5}},
        }
        assert tracker.apply(_event({"type": "message_end", "message": message}))
        tracker.apply(
            _event({"type": "message_end", "message": {**message, "model": "m2", "errorMessage": "e1"}})
        )
        tracker.apply(_event({"type": "message_end", "message": {**message, "errorMessage": "e2"}}))
        assert tracker.usage.turns == 3
        assert tracker.usage.input == 30
        assert tracker.usage.cache_read == 6
        assert tracker.usage.cost == pytest.approx(1.5)
        assert tracker.progress.tokens == 45
        assert tracker.model == "m1"
        assert tracker.error == "e1"
        assert len(tracker.messages) == 3

    def test_tool_result_feeds_recent_output(self):
        tracker = self._tracker()
        text = "\n".join(f"l{i}" for i in range(12))
        tracker.apply(
            _event(
                {
                    "type": "tool_result_end",
                    "message": {"role": "toolResult", "content": [{"type": "text", "text": text}]},
                }
            )
        )
        assert tracker.progress.recent_output == [f"l{i}" for i in range(4, 12)]
        assert tracker.messages[0]["role"] == "toolResult"

    def test_unknown_events_are_ignored(self):
        tracker = self._tracker()
        assert not tracker.apply(_event({"type": "agent_start"}))
        assert tracker.messages == []
