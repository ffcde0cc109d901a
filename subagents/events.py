"""
Event Bus — Run Lifecycle Notifications.

Typed events for things the foreground process should hear about without
polling for them: a background run was launched, its status changed, its
result file landed. Events are Pydantic models queued onto an asyncio
dispatcher that fans them out to fnmatch-pattern subscribers.

  - emit() enqueues and never blocks
  - handlers may be sync or async; their exceptions are logged, not raised
  - events are dispatched in emission order
"""

from __future__ import annotations

import asyncio
import fnmatch
import re
import uuid
from typing import Any, Callable, Coroutine, Optional

import structlog
from pydantic import BaseModel, Field

from subagents.orchestration.models import RunState, StepOutcome

logger = structlog.get_logger(__name__)

EventHandler = Callable[["SubagentEvent"], Any] | Callable[
    ["SubagentEvent"], Coroutine[Any, Any, Any]
]

# "JobStatusChanged" -> ["Job", "Status", "Changed"]; acronyms stay together.
_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")

_STOP = object()


class SubagentEvent(BaseModel):
    """Base event; ``event_type`` is derived from the class name when unset."""

    event_type: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            parts = _CAMEL_SPLIT_RE.findall(type(self).__name__.removesuffix("Event"))
            self.event_type = ".".join(p.lower() for p in parts)


class EventBus:
    """Async fan-out of SubagentEvents to pattern subscribers.

    ``"run.*"`` matches ``run.started`` and ``run.completed``; ``"*"`` matches
    everything.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue_size)
        self._handlers: dict[str, tuple[re.Pattern[str], str, EventHandler]] = {}
        self._task: Optional[asyncio.Task[None]] = None
        self._waiters: dict[int, asyncio.Event] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def subscription_count(self) -> int:
        return len(self._handlers)

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._dispatch_loop(), name="subagents-event-bus")
        logger.debug("event_bus.started")

    async def stop(self) -> None:
        """Dispatch whatever is queued, then stop."""
        if self._task is None:
            return
        try:
            self._queue.put_nowait(_STOP)
        except asyncio.QueueFull:
            self._task.cancel()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            self._task.cancel()
        self._task = None
        for waiter in self._waiters.values():
            waiter.set()
        self._waiters.clear()
        logger.debug("event_bus.stopped")

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        sub_id = uuid.uuid4().hex[:12]
        self._handlers[sub_id] = (re.compile(fnmatch.translate(pattern)), pattern, handler)
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        self._handlers.pop(sub_id, None)

    def emit(self, event: SubagentEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("event_bus.queue_full", event_type=event.event_type)

    async def emit_async(self, event: SubagentEvent) -> None:
        """Emit and wait until every matching handler has run."""
        if not self.is_running:
            raise RuntimeError("emit_async called on a stopped EventBus")
        done = asyncio.Event()
        self._waiters[id(event)] = done
        self.emit(event)
        try:
            await asyncio.wait_for(done.wait(), timeout=10.0)
        finally:
            self._waiters.pop(id(event), None)

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                break
            await self._dispatch(item)
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _STOP:
                await self._dispatch(item)

    async def _dispatch(self, event: SubagentEvent) -> None:
        matching = [
            (pattern, handler)
            for regex, pattern, handler in list(self._handlers.values())
            if regex.match(event.event_type)
        ]
        if matching:
            await asyncio.gather(
                *(self._invoke(pattern, handler, event) for pattern, handler in matching)
            )
        waiter = self._waiters.get(id(event))
        if waiter is not None:
            waiter.set()

    @staticmethod
    async def _invoke(pattern: str, handler: EventHandler, event: SubagentEvent) -> None:
        try:
            result = handler(event)
            if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                await result
        except Exception:
            logger.error(
                "event_bus.handler_error",
                pattern=pattern,
                event_type=event.event_type,
                exc_info=True,
            )


# ---------------------------------------------------------------------------
# Event definitions
# ---------------------------------------------------------------------------


class RunStartedEvent(SubagentEvent):
    """A background run was launched."""

    run_id: str
    mode: str
    agents: list[str] = Field(default_factory=list)
    async_dir: str
    pid: Optional[int] = None


class JobStatusChangedEvent(SubagentEvent):
    """The poller saw a background run change state or step."""

    run_id: str
    status: RunState
    current_step: Optional[int] = None
    steps_total: Optional[int] = None
    crashed: bool = False


class RunCompletedEvent(SubagentEvent):
    """A result file for this session's run appeared."""

    run_id: str
    agent: str
    success: bool
    summary: str = ""
    exit_code: int = 0
    duration_ms: int = 0
    results: list[StepOutcome] = Field(default_factory=list)
    result_path: Optional[str] = None
    async_dir: Optional[str] = None
    share_url: Optional[str] = None
    task_index: Optional[int] = None
    total_tasks: Optional[int] = None
