"""
Worker Event Stream — Parsing and Progress Aggregation.

A worker writes newline-delimited JSON to stdout, one event per line. Output
arrives in arbitrary chunks, so :class:`EventStreamParser` buffers partial
lines and yields only complete, decoded events. :class:`ProgressTracker`
folds those events into the task's live :class:`Progress` record and the
accumulating message list; the two halves know nothing about each other.

Recognized event kinds:

    tool_execution_start   a tool call began
    tool_execution_end     the current tool call finished
    message_end            a completed exchange (assistant or toolResult)
    tool_result_end        a tool result message
"""

from __future__ import annotations

import codecs
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterator, Optional

import structlog

from subagents.orchestration.models import Progress, RecentTool, Usage

logger = structlog.get_logger(__name__)

TOOL_START = "tool_execution_start"
TOOL_END = "tool_execution_end"
MESSAGE_END = "message_end"
TOOL_RESULT_END = "tool_result_end"

ASSISTANT_ROLE = "assistant"
TOOL_RESULT_ROLE = "toolResult"

RECENT_TOOLS_LIMIT = 5
RECENT_OUTPUT_LINES = 8

_PREVIEW_KEYS = (
    "command",
    "path",
    "file_path",
    "pattern",
    "query",
    "url",
    "task",
    "describe",
    "search",
)


@dataclass
class WorkerEvent:
    """One decoded line of worker output."""

    kind: str
    payload: dict[str, Any]
    raw: str

    @property
    def message(self) -> Optional[dict[str, Any]]:
        msg = self.payload.get("message")
        return msg if isinstance(msg, dict) else None


class EventStreamParser:
    """Incremental NDJSON decoder bound to one worker's stdout.

    Feed it raw bytes as they arrive; it yields each complete event once.
    Lines that are not JSON objects are kept in :attr:`raw_lines` (for the
    event-log artifact) but otherwise skipped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.raw_lines: list[str] = []

    def feed(self, chunk: bytes) -> Iterator[WorkerEvent]:
        self._buffer += self._decoder.decode(chunk)
        *complete, self._buffer = self._buffer.split("\n")
        for line in complete:
            event = self._parse_line(line)
            if event is not None:
                yield event

    def flush(self) -> Iterator[WorkerEvent]:
        """Emit whatever is left once the stream has closed."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        event = self._parse_line(remainder)
        if event is not None:
            yield event

    def _parse_line(self, line: str) -> Optional[WorkerEvent]:
        line = line.rstrip("\r")
        if not line.strip():
            return None
        self.raw_lines.append(line)
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("stream.unparseable_line", preview=line[:80])
            return None
        if not isinstance(payload, dict):
            return None
        return WorkerEvent(kind=str(payload.get("type", "")), payload=payload, raw=line)


async def iter_events(
    reader: Any,  # asyncio.StreamReader
    parser: EventStreamParser,
    chunk_size: int = 65536,
    on_chunk: Any = None,
) -> AsyncIterator[WorkerEvent]:
    """Yield parsed events from *reader* until EOF.

    *on_chunk*, when given, sees every raw chunk (used to tee output to disk).
    """
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        if on_chunk is not None:
            on_chunk(chunk)
        for event in parser.feed(chunk):
            yield event
    for event in parser.flush():
        yield event


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def extract_text_from_content(content: Any) -> str:
    """Flatten the various message content shapes into plain text."""
    if not content:
        return ""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        if part.get("type") == "text" and "text" in part:
            texts.append(str(part["text"]))
        elif part.get("type") == "tool_result" and "content" in part:
            inner = extract_text_from_content(part["content"])
            if inner:
                texts.append(inner)
        elif "text" in part:
            texts.append(str(part["text"]))
    return "\n".join(texts)


def get_final_output(messages: list[dict[str, Any]]) -> str:
    """Text of the last assistant exchange; the last text part wins."""
    for message in reversed(messages):
        if message.get("role") != ASSISTANT_ROLE:
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        final = ""
        for part in content or []:
            if isinstance(part, dict) and part.get("type") == "text":
                final = str(part.get("text", ""))
        return final
    return ""


def extract_tool_args_preview(args: Any) -> str:
    """Short human-readable preview of a tool call's arguments."""
    if not isinstance(args, dict):
        return ""

    # MCP-style calls: server/tool args
    tool = args.get("tool")
    if isinstance(tool, str) and tool:
        server = args.get("server")
        prefix = f"{server}/" if isinstance(server, str) and server else ""
        inner = args.get("args")
        suffix = f" {inner[:40]}" if isinstance(inner, str) and inner else ""
        return f"{prefix}{tool}{suffix}"

    for key in _PREVIEW_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value if len(value) <= 60 else f"{value[:57]}..."

    for key, value in args.items():
        if isinstance(value, str) and value:
            preview = value if len(value) <= 50 else f"{value[:47]}..."
            return f"{key}={preview}"
    return ""


# ---------------------------------------------------------------------------
# Progress aggregation
# ---------------------------------------------------------------------------


@dataclass
class ProgressTracker:
    """Folds worker events into a Progress record and a message list."""

    progress: Progress
    model: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)
    messages: list[dict[str, Any]] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    error: Optional[str] = None

    def apply(self, event: WorkerEvent) -> bool:
        """Fold one event in. Returns True when the event is significant
        enough that observers should hear about it immediately."""
        self.touch()
        if event.kind == TOOL_START:
            self._on_tool_start(event.payload)
            return True
        if event.kind == TOOL_END:
            self._on_tool_end()
            return False
        message = event.message
        if message is None:
            return False
        if event.kind == MESSAGE_END:
            self._on_message(message)
            return message.get("role") == ASSISTANT_ROLE
        if event.kind == TOOL_RESULT_END:
            self.messages.append(message)
            self._push_output(extract_text_from_content(message.get("content")))
        return False

    def touch(self) -> None:
        self.progress.duration_ms = int((time.monotonic() - self.started_at) * 1000)

    def _on_tool_start(self, payload: dict[str, Any]) -> None:
        self.progress.tool_count += 1
        self.progress.current_tool = payload.get("toolName") or payload.get("tool_name")
        self.progress.current_tool_args = extract_tool_args_preview(payload.get("args") or {})

    def _on_tool_end(self) -> None:
        if self.progress.current_tool:
            self.progress.recent_tools.insert(
                0,
                RecentTool(
                    tool=self.progress.current_tool,
                    args=self.progress.current_tool_args or "",
                    end_time=time.time(),
                ),
            )
            del self.progress.recent_tools[RECENT_TOOLS_LIMIT:]
        self.progress.current_tool = None
        self.progress.current_tool_args = None

    def _on_message(self, message: dict[str, Any]) -> None:
        self.messages.append(message)
        if message.get("role") != ASSISTANT_ROLE:
            if message.get("role") == TOOL_RESULT_ROLE:
                self._push_output(extract_text_from_content(message.get("content")))
            return

        self.usage.turns += 1
        usage = message.get("usage")
        if isinstance(usage, dict):
            self.usage.input += int(usage.get("input") or 0)
            self.usage.output += int(usage.get("output") or 0)
            self.usage.cache_read += int(usage.get("cacheRead") or 0)
            self.usage.cache_write += int(usage.get("cacheWrite") or 0)
            cost = usage.get("cost")
            if isinstance(cost, dict):
                self.usage.cost += float(cost.get("total") or 0.0)
            elif isinstance(cost, (int, float)):
                self.usage.cost += float(cost)
            self.progress.tokens = self.usage.input + self.usage.output

        # First model and first error are kept; later exchanges never overwrite them.
        if self.model is None and message.get("model"):
            self.model = str(message["model"])
        if self.error is None and message.get("errorMessage"):
            self.error = str(message["errorMessage"])

        self._push_output(extract_text_from_content(message.get("content")))

    def _push_output(self, text: str) -> None:
        if not text:
            return
        lines = [line for line in text.split("\n") if line.strip()]
        self.progress.recent_output.extend(lines[-RECENT_OUTPUT_LINES:])
        del self.progress.recent_output[:-RECENT_OUTPUT_LINES]
