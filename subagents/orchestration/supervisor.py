"""
Async Run Supervisor — Launching and Watching Background Runs.

An async run is handed to a detached ``run_entry`` process and the caller
gets its run id back immediately. The supervisor then keeps a small job
table for rendering, refreshed by re-reading each job's status file, and
independently watches the results directory so it can raise a
RunCompletedEvent when a result file for this session appears.

The job table belongs to one supervisor instance; ``start_session`` clears
it and ``stop`` tears the background tasks down. The status file on disk is
authoritative and the table is only a cache that can be rebuilt from it.
Background runs are never cancelled from here.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import sys
import tempfile
import time
import uuid
from pathlib import Path
from typing import Optional

import structlog

from subagents.config import OrchestrationConfig
from subagents.events import (
    EventBus,
    JobStatusChangedEvent,
    RunCompletedEvent,
    RunStartedEvent,
)
from subagents.orchestration.errors import LaunchError
from subagents.orchestration.models import (
    ArtifactConfig,
    AsyncJob,
    BackgroundRunConfig,
    MaxOutputConfig,
    RunResultFile,
    RunStatus,
    TaskSpec,
)
from subagents.orchestration.status import (
    RUNNER_LOG_FILE,
    StatusCache,
    belongs_to,
    read_result_file,
    read_status,
    result_path_for,
)

logger = structlog.get_logger(__name__)

RUN_ENTRY_MODULE = "subagents.orchestration.run_entry"


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def job_from_status(run_dir: Path, status: RunStatus) -> AsyncJob:
    """Rebuild a job table entry from a run's status file."""
    return AsyncJob(
        async_id=status.run_id,
        async_dir=str(run_dir),
        status=status.state,
        mode=status.mode,
        agents=[step.agent for step in status.steps],
        current_step=status.current_step,
        steps_total=len(status.steps),
        started_at=status.started_at,
        updated_at=status.last_update,
        finished_at=status.ended_at,
        pid=status.pid,
        session_dir=status.session_dir,
        output_file=status.output_file,
        total_tokens=status.total_tokens,
        session_file=status.session_file,
        share_url=status.share_url,
    )


def list_runs(async_root: Path) -> list[AsyncJob]:
    """Every run directory under *async_root* that has a status file, newest first."""
    if not async_root.is_dir():
        return []
    jobs = []
    for run_dir in async_root.iterdir():
        if not run_dir.is_dir():
            continue
        status = read_status(run_dir)
        if status is not None:
            jobs.append(job_from_status(run_dir, status))
    return sorted(jobs, key=lambda job: job.started_at, reverse=True)


class AsyncRunSupervisor:
    """Owns the foreground view of this session's background runs."""

    def __init__(
        self,
        config: OrchestrationConfig,
        event_bus: Optional[EventBus] = None,
        session_id: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> None:
        self._config = config
        self._bus = event_bus
        self._session_id = session_id
        self._cwd = cwd or os.getcwd()
        self._jobs: dict[str, AsyncJob] = {}
        self._procs: dict[str, subprocess.Popen] = {}
        self._exited: set[str] = set()
        self._cache = StatusCache()
        self._announced: set[str] = set()
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._watch_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._config.results_dir.mkdir(parents=True, exist_ok=True)
        self._poll_task = asyncio.create_task(self._poll_loop(), name="subagents-job-poller")
        self._watch_task = asyncio.create_task(self._watch_loop(), name="subagents-result-watcher")
        logger.info("supervisor.started", session_id=self._session_id)

    async def stop(self) -> None:
        for task in (self._poll_task, self._watch_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._watch_task = None
        self._reap()
        self._jobs.clear()
        self._cache.clear()
        logger.info("supervisor.stopped", session_id=self._session_id)

    def start_session(self, session_id: Optional[str], cwd: Optional[str] = None) -> None:
        """Bind to a (new) session; jobs from the previous one are forgotten."""
        self._session_id = session_id
        if cwd is not None:
            self._cwd = cwd
        self._jobs.clear()
        self._cache.clear()
        self._announced.clear()
        self._exited.clear()
        logger.info("supervisor.session", session_id=session_id, cwd=self._cwd)

    # ------------------------------------------------------------------
    # Job table
    # ------------------------------------------------------------------

    @property
    def jobs(self) -> list[AsyncJob]:
        return sorted(self._jobs.values(), key=lambda job: job.started_at)

    def get(self, run_id: str) -> Optional[AsyncJob]:
        return self._jobs.get(run_id)

    def launch(
        self,
        steps: list[TaskSpec],
        cwd: str,
        placeholder: str = "{previous}",
        max_output: Optional[MaxOutputConfig] = None,
        artifact_config: Optional[ArtifactConfig] = None,
        share: bool = False,
        session_dir: Optional[str] = None,
        task_index: Optional[int] = None,
        total_tasks: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> AsyncJob:
        """Start a detached background run and register it as ``queued``."""
        if not steps:
            raise ValueError("A background run needs at least one step")
        run_id = run_id or new_run_id()
        run_dir = self._config.async_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        artifact_config = artifact_config or ArtifactConfig()

        if session_dir:
            run_session_dir: Optional[str] = str(Path(session_dir) / f"async-{run_id}")
        elif share:
            run_session_dir = str(run_dir / "session")
        else:
            run_session_dir = None

        cfg = BackgroundRunConfig(
            id=run_id,
            steps=steps,
            result_path=str(result_path_for(self._config.results_dir, run_id)),
            cwd=cwd,
            placeholder=placeholder,
            max_output=max_output,
            artifacts_dir=str(self._config.artifacts_dir) if artifact_config.enabled else None,
            artifact_config=artifact_config,
            share=share,
            session_dir=run_session_dir,
            async_dir=str(run_dir),
            session_id=self._session_id,
            task_index=task_index,
            total_tasks=total_tasks,
            worker_command=self._config.worker_command,
            share_viewer_url=self._config.share_viewer_url,
        )

        fd, cfg_path = tempfile.mkstemp(prefix="subagents-run-", suffix=".json")
        with open(fd, "w", encoding="utf-8") as f:
            f.write(cfg.model_dump_json())

        try:
            with open(run_dir / RUNNER_LOG_FILE, "ab") as stderr_log:
                proc = subprocess.Popen(
                    [sys.executable, "-m", RUN_ENTRY_MODULE, cfg_path],
                    cwd=cwd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr_log,
                    start_new_session=True,
                )
        except OSError as exc:
            Path(cfg_path).unlink(missing_ok=True)
            logger.error("supervisor.launch_failed", run_id=run_id, error=str(exc))
            raise LaunchError(f"Failed to start background run: {exc}") from exc

        self._procs[run_id] = proc
        job = AsyncJob(
            async_id=run_id,
            async_dir=str(run_dir),
            mode="chain" if len(steps) > 1 else "single",
            agents=[step.agent for step in steps],
            steps_total=len(steps),
            pid=proc.pid,
            session_dir=run_session_dir,
            output_file=str(run_dir / "output.log"),
        )
        self._jobs[run_id] = job
        logger.info("supervisor.launched", run_id=run_id, pid=proc.pid, steps=len(steps))
        if self._bus is not None:
            self._bus.emit(
                RunStartedEvent(
                    run_id=run_id,
                    mode=job.mode,
                    agents=job.agents,
                    async_dir=job.async_dir,
                    pid=proc.pid,
                )
            )
        return job

    # ------------------------------------------------------------------
    # Status polling
    # ------------------------------------------------------------------

    def poll_once(self) -> None:
        """Refresh every live job from its status file; drop expired ones."""
        now = time.time()
        self._reap()
        for run_id, job in list(self._jobs.items()):
            if job.is_terminal:
                if job.finished_at and now - job.finished_at >= self._config.job_retention_seconds:
                    del self._jobs[run_id]
                    self._exited.discard(run_id)
                    self._cache.forget(Path(job.async_dir))
                    logger.debug("supervisor.job_dropped", run_id=run_id)
                continue

            status = self._cache.get(Path(job.async_dir))
            if status is None:
                job.status_missing = True
                if run_id in self._exited:
                    # The runner exited without ever writing a status file.
                    job.crashed = True
                    job.status = "failed"
                    job.finished_at = now
                    logger.warning("supervisor.job_crashed", run_id=run_id, pid=job.pid)
                    if self._bus is not None:
                        self._bus.emit(
                            JobStatusChangedEvent(
                                run_id=run_id,
                                status="failed",
                                steps_total=job.steps_total,
                                crashed=True,
                            )
                        )
                continue

            changed = (
                status.state != job.status
                or status.current_step != job.current_step
            )
            job.status_missing = False
            job.status = status.state
            job.current_step = status.current_step
            job.steps_total = len(status.steps)
            job.updated_at = status.last_update
            job.pid = status.pid or job.pid
            job.total_tokens = status.total_tokens
            job.session_file = status.session_file
            job.share_url = status.share_url
            if status.output_file:
                job.output_file = status.output_file
            if status.is_terminal:
                job.finished_at = status.ended_at or now
                logger.info("supervisor.job_finished", run_id=run_id, state=status.state)

            if changed and self._bus is not None:
                self._bus.emit(
                    JobStatusChangedEvent(
                        run_id=run_id,
                        status=status.state,
                        current_step=status.current_step,
                        steps_total=len(status.steps),
                    )
                )

    def _reap(self) -> None:
        for run_id, proc in list(self._procs.items()):
            if proc.poll() is not None:
                del self._procs[run_id]
                self._exited.add(run_id)

    async def _poll_loop(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception:
                logger.error("supervisor.poll_error", exc_info=True)
            await asyncio.sleep(self._config.poll_interval)

    # ------------------------------------------------------------------
    # Result watching
    # ------------------------------------------------------------------

    def scan_results_once(self) -> list[RunResultFile]:
        """Handle new result files that belong to this session."""
        results_dir = self._config.results_dir
        if not results_dir.is_dir():
            return []
        handled: list[RunResultFile] = []
        for path in sorted(results_dir.glob("*.json")):
            if path.name in self._announced:
                continue
            result = read_result_file(path)
            if result is None:
                continue
            if not belongs_to(result, self._session_id, self._cwd):
                continue
            self._announced.add(path.name)
            handled.append(result)
            self._on_result(path, result)
        return handled

    def _on_result(self, path: Path, result: RunResultFile) -> None:
        job = self._jobs.get(result.id)
        if job is not None and not job.is_terminal:
            job.status = "complete" if result.success else "failed"
            job.finished_at = time.time()
            job.share_url = result.share_url or job.share_url
        logger.info("supervisor.result", run_id=result.id, success=result.success)
        if self._bus is None:
            # Nobody to hand the completion to; leave the file for another reader.
            return
        self._bus.emit(
            RunCompletedEvent(
                run_id=result.id,
                agent=result.agent,
                success=result.success,
                summary=result.summary,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
                results=result.results,
                result_path=str(path),
                async_dir=result.async_dir,
                share_url=result.share_url,
                task_index=result.task_index,
                total_tasks=result.total_tasks,
            )
        )
        try:
            path.unlink()
        except OSError as exc:
            logger.debug("supervisor.result_unlink_failed", path=str(path), error=str(exc))
        else:
            self._announced.discard(path.name)

    async def _watch_loop(self) -> None:
        while True:
            try:
                self.scan_results_once()
            except Exception:
                logger.error("supervisor.watch_error", exc_info=True)
            await asyncio.sleep(self._config.poll_interval)
