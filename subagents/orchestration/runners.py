"""
Worker Runners — Spawning One Worker Process per Task.

Each runner takes a TaskSpec, launches the external worker executable with
the task text and any model/tool/system-prompt overrides, folds its streamed
JSON events into a live Progress record, and returns a TaskResult once the
process has exited.

A zero exit code is not taken at face value: the finished message list is
run through the :class:`FailureClassifier`, and a matched failure signature
turns the result into a failure. Worker failures never raise; they come back
as a TaskResult with a non-zero ``exit_code`` and an ``error`` string.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Optional

import structlog

from subagents.config import OrchestrationConfig
from subagents.orchestration.agents import AgentRegistry
from subagents.orchestration.artifacts import ArtifactStore
from subagents.orchestration.failures import FailureClassifier
from subagents.orchestration.models import (
    MaxOutputConfig,
    Progress,
    TaskResult,
    TaskSpec,
)
from subagents.orchestration.share import find_latest_session_file, share_session
from subagents.orchestration.stream import (
    EventStreamParser,
    ProgressTracker,
    get_final_output,
    iter_events,
)
from subagents.orchestration.truncation import truncate_output

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[Progress], None]

_EXTENSION_SUFFIXES = (".py", ".ts", ".js")


@dataclass
class RunOptions:
    """Run-scoped settings shared by every task of one orchestration call."""

    run_id: str
    index: Optional[int] = None
    cwd: Optional[str] = None
    max_output: Optional[MaxOutputConfig] = None
    artifacts: Optional[ArtifactStore] = None
    session_dir: Optional[str] = None
    share: bool = False
    on_update: Optional[ProgressCallback] = None
    cancel_event: Optional[asyncio.Event] = None
    output_log: Optional[Path] = None  # tee of raw stdout/stderr


class WorkerRunnerBase(ABC):
    """Abstract base for worker execution backends."""

    @abstractmethod
    async def run(self, spec: TaskSpec, options: RunOptions) -> TaskResult:
        """Execute one task and return its terminal result."""


def split_tools(tools: list[str]) -> tuple[list[str], list[str]]:
    """Separate built-in tool names from extension file references."""
    builtin: list[str] = []
    extensions: list[str] = []
    for tool in tools:
        if "/" in tool or tool.endswith(_EXTENSION_SUFFIXES):
            extensions.append(tool)
        else:
            builtin.append(tool)
    return builtin, extensions


def _write_prompt_file(agent: str, prompt: str) -> tuple[str, str]:
    tmp_dir = tempfile.mkdtemp(prefix="subagents-prompt-")
    path = os.path.join(tmp_dir, f"{agent.replace(os.sep, '_')}.md")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(prompt)
    return tmp_dir, path


class ProcessWorkerRunner(WorkerRunnerBase):
    """Run a task as an external worker process speaking NDJSON on stdout."""

    def __init__(
        self,
        config: OrchestrationConfig,
        agents: AgentRegistry,
        classifier: Optional[FailureClassifier] = None,
    ) -> None:
        self._config = config
        self._agents = agents
        self._classifier = classifier or FailureClassifier()
        self._command = shlex.split(config.worker_command)

    def build_args(
        self,
        task: str,
        model: Optional[str] = None,
        tools: Optional[list[str]] = None,
        prompt_path: Optional[str] = None,
        session_dir: Optional[str] = None,
        persist_session: bool = False,
    ) -> list[str]:
        """Worker command line for one task (executable included)."""
        args = [*self._command, "--mode", "json", "-p"]
        if not (session_dir or persist_session):
            args.append("--no-session")
        if session_dir:
            args += ["--session-dir", session_dir]
        if model:
            args += ["--model", model]
        if tools:
            builtin, extensions = split_tools(tools)
            if builtin:
                args += ["--tools", ",".join(builtin)]
            for path in extensions:
                args += ["--extension", path]
        if prompt_path:
            args += ["--append-system-prompt", prompt_path]
        args.append(f"Task: {task}")
        return args

    async def run(self, spec: TaskSpec, options: RunOptions) -> TaskResult:
        agent = self._agents.get(spec.agent)
        if agent is None:
            logger.warning("runner.unknown_agent", agent=spec.agent, run_id=options.run_id)
            return TaskResult(
                agent=spec.agent,
                task=spec.task,
                exit_code=1,
                error=f"Unknown agent: {spec.agent}",
                progress=Progress(
                    index=options.index or 0,
                    agent=spec.agent,
                    task=spec.task,
                    status="failed",
                    error=f"Unknown agent: {spec.agent}",
                ),
            )

        model = spec.model if spec.model is not None else agent.model
        tools = spec.tools if spec.tools is not None else agent.tools
        system_prompt = (
            spec.system_prompt if spec.system_prompt is not None else agent.system_prompt
        ).strip()

        if options.session_dir:
            try:
                Path(options.session_dir).mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning("runner.session_dir_failed", path=options.session_dir, error=str(exc))

        prompt_dir: Optional[str] = None
        prompt_path: Optional[str] = None
        if system_prompt:
            prompt_dir, prompt_path = _write_prompt_file(agent.name, system_prompt)

        try:
            return await self._run_process(spec, options, model, tools, prompt_path)
        finally:
            if prompt_dir:
                shutil.rmtree(prompt_dir, ignore_errors=True)

    async def _run_process(
        self,
        spec: TaskSpec,
        options: RunOptions,
        model: Optional[str],
        tools: list[str],
        prompt_path: Optional[str],
    ) -> TaskResult:
        args = self.build_args(
            spec.task,
            model=model,
            tools=tools,
            prompt_path=prompt_path,
            session_dir=options.session_dir,
            persist_session=options.share,
        )
        cwd = spec.cwd or options.cwd
        progress = Progress(
            index=options.index or 0, agent=spec.agent, task=spec.task, status="running"
        )
        tracker = ProgressTracker(progress=progress)
        parser = EventStreamParser()

        store = options.artifacts if options.artifacts and options.artifacts.enabled else None
        paths = None
        if store is not None:
            paths = store.paths_for(options.run_id, spec.agent, options.index)
            store.write_input(paths, spec.agent, spec.task)

        logger.info(
            "runner.spawn",
            run_id=options.run_id,
            agent=spec.agent,
            index=options.index,
            cwd=cwd,
            model=model,
        )

        tee: Optional[IO[bytes]] = None
        if options.output_log is not None:
            try:
                tee = open(options.output_log, "ab")
            except OSError as exc:
                logger.warning("runner.output_log_failed", path=str(options.output_log), error=str(exc))

        stderr_chunks: list[bytes] = []
        cancelled = False
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *args,
                    cwd=cwd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                logger.error("runner.spawn_failed", agent=spec.agent, error=str(exc))
                tracker.touch()
                progress.status = "failed"
                progress.error = f"Failed to start worker: {exc}"
                return TaskResult(
                    agent=spec.agent,
                    task=spec.task,
                    exit_code=1,
                    model=model,
                    error=progress.error,
                    progress=progress,
                )

            emitter = _ThrottledEmitter(options.on_update, self._config.update_throttle)

            def on_chunk(chunk: bytes) -> None:
                if tee is not None:
                    tee.write(chunk)
                    tee.flush()

            async def consume_stdout() -> None:
                async for event in iter_events(proc.stdout, parser, on_chunk=on_chunk):
                    significant = tracker.apply(event)
                    emitter.emit(progress, force=significant)

            async def consume_stderr() -> None:
                while True:
                    chunk = await proc.stderr.read(65536)
                    if not chunk:
                        break
                    stderr_chunks.append(chunk)
                    on_chunk(chunk)

            streams = asyncio.gather(consume_stdout(), consume_stderr())
            try:
                if options.cancel_event is not None:
                    cancel_wait = asyncio.ensure_future(options.cancel_event.wait())
                    done, _ = await asyncio.wait(
                        {streams, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if cancel_wait in done and not streams.done():
                        cancelled = True
                        logger.info("runner.cancelled", run_id=options.run_id, agent=spec.agent)
                        await self._terminate(proc)
                    else:
                        cancel_wait.cancel()
                await streams
                returncode = await proc.wait()
            except asyncio.CancelledError:
                streams.cancel()
                await self._terminate(proc)
                raise
        finally:
            if tee is not None:
                tee.close()

        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
        exit_code = returncode
        error = tracker.error
        if cancelled:
            exit_code = exit_code or 1
            error = error or "Cancelled"
        elif exit_code != 0 and not error:
            error = stderr_text or f"Worker exited with code {exit_code}"

        if exit_code == 0 and not error:
            failure = self._classifier.classify(tracker.messages)
            if failure is not None:
                exit_code = failure.exit_code or 1
                error = failure.describe()
                logger.info(
                    "runner.embedded_failure",
                    agent=spec.agent,
                    tool=failure.error_type,
                    exit_code=failure.exit_code,
                )

        tracker.touch()
        progress.status = "completed" if exit_code == 0 and not error else "failed"
        if error:
            progress.error = error
            if progress.current_tool:
                progress.failed_tool = progress.current_tool

        result = TaskResult(
            agent=spec.agent,
            task=spec.task,
            exit_code=exit_code,
            messages=tracker.messages,
            usage=tracker.usage,
            model=tracker.model or model,
            error=error,
            progress=progress,
        )
        full_output = get_final_output(result.messages)

        if store is not None and paths is not None:
            result.artifact_paths = paths
            store.write_output(paths, full_output)
            store.write_events(paths, parser.raw_lines)
            store.write_metadata(
                paths,
                {
                    "run_id": options.run_id,
                    "agent": spec.agent,
                    "task": spec.task,
                    "exit_code": exit_code,
                    "usage": result.usage.model_dump(),
                    "model": result.model,
                    "duration_ms": progress.duration_ms,
                    "tool_count": progress.tool_count,
                    "error": error,
                },
            )

        if options.max_output is not None:
            truncation = truncate_output(
                full_output,
                options.max_output,
                artifact_path=paths.output_path if paths is not None else None,
            )
            if truncation.truncated:
                result.truncation = truncation

        if options.session_dir:
            session_file = find_latest_session_file(options.session_dir)
            result.session_file = str(session_file) if session_file else None
            if options.share:
                shared = await share_session(options.session_dir, self._config.share_viewer_url)
                result.share_url = shared.share_url
                result.gist_url = shared.gist_url
                result.share_error = shared.error

        emitter.emit(progress, force=True)
        logger.info(
            "runner.complete",
            run_id=options.run_id,
            agent=spec.agent,
            exit_code=exit_code,
            duration_ms=progress.duration_ms,
            tools=progress.tool_count,
        )
        return result

    async def _terminate(self, proc: Any) -> None:
        """SIGTERM, then SIGKILL if the worker outlives the grace period."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("runner.kill", pid=proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()


class _ThrottledEmitter:
    """Delivers Progress snapshots at most once per interval unless forced."""

    def __init__(self, callback: Optional[ProgressCallback], interval: float) -> None:
        self._callback = callback
        self._interval = interval
        self._last = 0.0

    def emit(self, progress: Progress, force: bool = False) -> None:
        if self._callback is None:
            return
        now = time.monotonic()
        if not force and now - self._last < self._interval:
            return
        self._last = now
        try:
            self._callback(progress.snapshot())
        except Exception:
            logger.warning("runner.progress_callback_failed", exc_info=True)
