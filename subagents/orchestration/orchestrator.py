"""
Orchestrator — The Single Entry Point for Delegated Work.

A request names exactly one of three shapes: a single task, a list of
independent tasks to fan out, or an ordered chain. The orchestrator
validates it before anything is spawned, resolves it into a RunConfig,
dispatches it to the right executor (or hands it to the async supervisor),
and folds the TaskResults into one OrchestrationResult.

Key behaviours:
  - Validation errors (no topology, two topologies, unknown agent, too many
    tasks) raise InvalidRequestError before any process starts
  - Parallel requests never run in the background; ``async`` is dropped
    with a note in the result
  - Every finished run leaves a result-correlation file in the results dir
  - Status lookup accepts a run id, an unambiguous prefix, or a directory
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import structlog
from pydantic import BaseModel

from subagents.config import OrchestrationConfig
from subagents.events import EventBus
from subagents.orchestration.agents import AgentRegistry
from subagents.orchestration.artifacts import ArtifactStore, cleanup_old_artifacts
from subagents.orchestration.errors import InvalidRequestError, RunNotFoundError
from subagents.orchestration.executors import run_chain, run_parallel
from subagents.orchestration.models import (
    ArtifactConfig,
    MaxOutputConfig,
    OrchestrationResult,
    Progress,
    RunConfig,
    RunResultFile,
    RunStatus,
    StepOutcome,
    TaskResult,
    TaskSpec,
)
from subagents.orchestration.run_entry import chain_label
from subagents.orchestration.runners import ProcessWorkerRunner, RunOptions, WorkerRunnerBase
from subagents.orchestration.status import (
    find_by_prefix,
    read_result_file,
    read_status,
    result_path_for,
    write_result_file,
)
from subagents.orchestration.supervisor import AsyncRunSupervisor, new_run_id

logger = structlog.get_logger(__name__)

ParallelProgressCallback = Callable[[list[Progress]], None]

ASYNC_PARALLEL_NOTE = "async not supported for parallel"


class OrchestrationRequest(BaseModel):
    """Caller-facing request. Exactly one of the three task shapes is set."""

    agent: Optional[str] = None
    task: Optional[str] = None
    tasks: Optional[list[TaskSpec]] = None
    chain: Optional[list[TaskSpec]] = None

    cwd: Optional[str] = None
    model: Optional[str] = None  # single mode only
    concurrency: Optional[int] = None
    run_async: Optional[bool] = None
    share: Optional[bool] = None
    session_dir: Optional[str] = None
    max_output: Optional[MaxOutputConfig] = None
    artifacts: bool = True
    include_progress: bool = False


@dataclass
class RunLookup:
    """What the status entry point found for one run."""

    run_id: str
    run_dir: Optional[Path] = None
    status: Optional[RunStatus] = None
    result: Optional[RunResultFile] = None

    @property
    def state(self) -> str:
        if self.status is not None:
            return self.status.state
        if self.result is not None:
            return "complete" if self.result.success else "failed"
        return "unknown"


class Orchestrator:
    """Validates requests and runs them under the requested topology."""

    def __init__(
        self,
        config: Optional[OrchestrationConfig] = None,
        agents: Optional[AgentRegistry] = None,
        runner: Optional[WorkerRunnerBase] = None,
        supervisor: Optional[AsyncRunSupervisor] = None,
        session_id: Optional[str] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._config = config or OrchestrationConfig()
        self._agents = agents
        self._runner = runner
        self._supervisor = supervisor
        self._session_id = session_id
        self._event_bus = event_bus if event_bus is not None else EventBus()

    @property
    def config(self) -> OrchestrationConfig:
        return self._config

    @property
    def supervisor(self) -> AsyncRunSupervisor:
        if self._supervisor is None:
            self._supervisor = AsyncRunSupervisor(
                self._config, event_bus=self._event_bus, session_id=self._session_id
            )
        return self._supervisor

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    async def start(self) -> None:
        """Start the event bus and the supervisor's poller and result watcher."""
        await self._event_bus.start()
        await self.supervisor.start()

    async def stop(self) -> None:
        await self.supervisor.stop()
        await self._event_bus.stop()

    def start_session(self, session_id: Optional[str], cwd: Optional[str] = None) -> None:
        """Switch to a new session: later results are tagged and filtered by it."""
        self._session_id = session_id
        self.supervisor.start_session(session_id, cwd=cwd)

    def agents(self, cwd: Optional[str] = None) -> AgentRegistry:
        if self._agents is None:
            self._agents = AgentRegistry.from_directories(
                self._config.agent_directories(Path(cwd) if cwd else None)
            )
        return self._agents

    def _runner_for(self, agents: AgentRegistry) -> WorkerRunnerBase:
        if self._runner is None:
            self._runner = ProcessWorkerRunner(self._config, agents)
        return self._runner

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def resolve(self, request: OrchestrationRequest) -> RunConfig:
        """Turn a request into a RunConfig, or raise InvalidRequestError."""
        has_single = request.agent is not None or request.task is not None
        has_parallel = bool(request.tasks)
        has_chain = bool(request.chain)
        selected = sum((has_single, has_parallel, has_chain))
        if selected != 1:
            raise InvalidRequestError(
                "Provide exactly one mode: agent+task (single), tasks (parallel) or chain"
            )
        if has_single and not (request.agent and request.task):
            raise InvalidRequestError("Single mode needs both an agent and a task")

        cwd = os.path.abspath(request.cwd or os.getcwd())
        registry = self.agents(cwd)

        if has_single:
            topology = "single"
            specs = [
                TaskSpec(agent=request.agent, task=request.task, model=request.model)
            ]
        elif has_parallel:
            topology = "parallel"
            specs = list(request.tasks or [])
            if len(specs) > self._config.max_parallel:
                raise InvalidRequestError(
                    f"Max {self._config.max_parallel} parallel tasks (got {len(specs)})"
                )
        else:
            topology = "chain"
            specs = list(request.chain or [])

        for index, spec in enumerate(specs):
            if spec.agent not in registry:
                available = ", ".join(registry.names) or "none"
                raise InvalidRequestError(f"Unknown agent: {spec.agent} (available: {available})")
            if not spec.task.strip() and not (topology == "chain" and index > 0):
                raise InvalidRequestError(f"Task for {spec.agent} is empty")

        run_async = self._config.async_by_default if request.run_async is None else request.run_async
        share = self._config.share_by_default if request.share is None else request.share
        return RunConfig(
            topology=topology,
            tasks=specs,
            concurrency=request.concurrency or self._config.max_concurrency,
            max_output=request.max_output
            or MaxOutputConfig(
                max_bytes=self._config.max_output_bytes,
                max_lines=self._config.max_output_lines,
            ),
            artifact_config=ArtifactConfig(
                enabled=request.artifacts and self._config.artifacts_enabled,
                cleanup_days=self._config.artifact_cleanup_days,
            ),
            run_async=run_async,
            share=share,
            session_dir=request.session_dir,
            cwd=cwd,
            placeholder=self._config.placeholder,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def run(
        self,
        request: OrchestrationRequest,
        on_progress: Optional[ParallelProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OrchestrationResult:
        run = self.resolve(request)
        notes: list[str] = []
        if run.run_async and run.topology == "parallel":
            run.run_async = False
            notes.append(ASYNC_PARALLEL_NOTE)

        if run.run_async:
            return self._launch_async(run)

        run_id = new_run_id()
        agents = self.agents(run.cwd)
        store = ArtifactStore(self._config.artifacts_dir, run.artifact_config)
        if store.enabled:
            cleanup_old_artifacts(store.directory, run.artifact_config.cleanup_days)
        started = time.time()

        def options_for(index: int) -> RunOptions:
            return RunOptions(
                run_id=run_id,
                index=index if run.topology != "single" else None,
                cwd=run.cwd,
                max_output=run.max_output,
                artifacts=store,
                session_dir=self._session_dir(run, run_id, index),
                share=run.share,
                cancel_event=cancel_event,
                on_update=(
                    (lambda p: on_progress([p])) if on_progress and run.topology != "parallel" else None
                ),
            )

        runner = self._runner_for(agents)
        logger.info("orchestrator.run", run_id=run_id, topology=run.topology, tasks=len(run.tasks))

        if run.topology == "single":
            single = await runner.run(run.tasks[0], options_for(0))
            result = self._single_result(single)
        elif run.topology == "parallel":
            outcome = await run_parallel(
                runner, run.tasks, options_for, run.concurrency, on_progress=on_progress
            )
            result = self._parallel_result(outcome.results, outcome.succeeded, notes)
        else:
            chain = await run_chain(
                runner,
                run.tasks,
                options_for,
                placeholder=run.placeholder,
                cancel_event=cancel_event,
            )
            result = self._chain_result(run.tasks, chain.results, chain.success)

        result.artifacts_dir = str(store.directory) if store.enabled else None
        result.artifact_files = [r.artifact_paths for r in result.results if r.artifact_paths]
        if request.include_progress:
            result.progress = [r.progress for r in result.results if r.progress is not None]
        self._write_sync_result(run, run_id, result, started)
        return result

    def _session_dir(self, run: RunConfig, run_id: str, index: int) -> Optional[str]:
        if run.session_dir:
            return str(Path(run.session_dir) / f"run-{index}")
        if run.share:
            return str(self._config.artifacts_dir / "sessions" / run_id / f"run-{index}")
        return None

    def _launch_async(self, run: RunConfig) -> OrchestrationResult:
        agents = self.agents(run.cwd)
        steps = [self._with_agent_defaults(spec, agents) for spec in run.tasks]
        job = self.supervisor.launch(
            steps,
            cwd=run.cwd or os.getcwd(),
            placeholder=run.placeholder,
            max_output=run.max_output,
            artifact_config=run.artifact_config,
            share=run.share,
            session_dir=run.session_dir,
        )
        label = chain_label(steps)
        return OrchestrationResult(
            mode=run.topology,
            text=f"Async run started: {job.async_id} ({label})\nStatus: {job.async_dir}",
            async_id=job.async_id,
            async_dir=job.async_dir,
            total_count=len(steps),
            chain_agents=[s.agent for s in steps] if run.topology == "chain" else None,
            total_steps=len(steps) if run.topology == "chain" else None,
        )

    @staticmethod
    def _with_agent_defaults(spec: TaskSpec, agents: AgentRegistry) -> TaskSpec:
        """Bake the agent's model/tools/prompt into the spec for the background run."""
        agent = agents.get(spec.agent)
        if agent is None:
            return spec
        return spec.model_copy(
            update={
                "model": spec.model if spec.model is not None else agent.model,
                "tools": spec.tools if spec.tools is not None else list(agent.tools),
                "system_prompt": (
                    spec.system_prompt if spec.system_prompt is not None else agent.system_prompt
                ),
            }
        )

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _single_result(result: TaskResult) -> OrchestrationResult:
        if result.succeeded:
            text = result.output or "(no output)"
        else:
            text = f"{result.agent} failed: {result.error or 'unknown error'}"
        return OrchestrationResult(
            mode="single",
            text=text,
            is_error=not result.succeeded,
            results=[result],
            succeeded_count=int(result.succeeded),
            total_count=1,
        )

    @staticmethod
    def _parallel_result(
        results: list[TaskResult], succeeded: int, notes: list[str]
    ) -> OrchestrationResult:
        header = f"{succeeded}/{len(results)} succeeded"
        if notes:
            header += "".join(f" ({note})" for note in notes)
        sections = [header]
        for i, r in enumerate(results, start=1):
            if r.succeeded:
                sections.append(f"[{i}] {r.agent}: {r.output or '(no output)'}")
            else:
                sections.append(f"[{i}] {r.agent} failed: {r.error or 'unknown error'}")
        return OrchestrationResult(
            mode="parallel",
            text="\n\n".join(sections),
            is_error=succeeded < len(results),
            results=results,
            succeeded_count=succeeded,
            total_count=len(results),
            notes=list(notes),
        )

    @staticmethod
    def _chain_result(
        specs: list[TaskSpec], results: list[TaskResult], success: bool
    ) -> OrchestrationResult:
        if success and results:
            text = results[-1].output or "(no output)"
        elif results:
            failed = results[-1]
            text = (
                f"Chain stopped at step {len(results)} ({failed.agent}): "
                f"{failed.error or 'unknown error'}"
            )
        else:
            text = "Chain cancelled before the first step"
        return OrchestrationResult(
            mode="chain",
            text=text,
            is_error=not success,
            results=results,
            succeeded_count=sum(1 for r in results if r.succeeded),
            total_count=len(specs),
            chain_agents=[s.agent for s in specs],
            total_steps=len(specs),
            current_step_index=max(len(results) - 1, 0),
        )

    def _write_sync_result(
        self, run: RunConfig, run_id: str, result: OrchestrationResult, started: float
    ) -> None:
        ended = time.time()
        write_result_file(
            result_path_for(self._config.results_dir, run_id),
            RunResultFile(
                id=run_id,
                agent=chain_label(run.tasks) if run.topology != "parallel" else (
                    "parallel:" + ",".join(t.agent for t in run.tasks)
                ),
                success=not result.is_error,
                summary=result.text,
                results=[
                    StepOutcome(
                        agent=r.agent,
                        output=r.final_output,
                        success=r.succeeded,
                        artifact_paths=r.artifact_paths,
                        truncated=bool(r.truncation and r.truncation.truncated),
                    )
                    for r in result.results
                ],
                exit_code=0 if not result.is_error else 1,
                timestamp=ended,
                duration_ms=int((ended - started) * 1000),
                artifacts_dir=result.artifacts_dir,
                cwd=run.cwd,
                session_id=self._session_id,
                session_file=next((r.session_file for r in result.results if r.session_file), None),
                share_url=next((r.share_url for r in result.results if r.share_url), None),
                gist_url=next((r.gist_url for r in result.results if r.gist_url), None),
                share_error=next((r.share_error for r in result.results if r.share_error), None),
                total_tasks=len(run.tasks),
            ),
        )

    # ------------------------------------------------------------------
    # Status lookup and retention
    # ------------------------------------------------------------------

    def status(self, run_id: Optional[str] = None, run_dir: Optional[str] = None) -> RunLookup:
        """Find a run by id, unambiguous id prefix, or explicit directory."""
        if run_dir:
            directory = Path(run_dir).expanduser().resolve()
            status = read_status(directory)
            if status is None:
                raise RunNotFoundError(f"No status file in {directory}")
            return RunLookup(
                run_id=status.run_id,
                run_dir=directory,
                status=status,
                result=read_result_file(result_path_for(self._config.results_dir, status.run_id)),
            )

        if not run_id:
            raise InvalidRequestError("Provide a run id or a run directory")

        matches = [m for m in find_by_prefix(self._config.async_dir, run_id) if m.is_dir()]
        if len(matches) > 1:
            names = ", ".join(m.name for m in matches)
            raise InvalidRequestError(f"Ambiguous run id prefix {run_id!r}: {names}")
        if matches:
            directory = matches[0]
            status = read_status(directory)
            resolved_id = status.run_id if status else directory.name
            return RunLookup(
                run_id=resolved_id,
                run_dir=directory,
                status=status,
                result=read_result_file(result_path_for(self._config.results_dir, resolved_id)),
            )

        result_matches = find_by_prefix(self._config.results_dir, run_id, suffix=".json")
        if len(result_matches) > 1:
            names = ", ".join(m.stem for m in result_matches)
            raise InvalidRequestError(f"Ambiguous run id prefix {run_id!r}: {names}")
        if result_matches:
            result = read_result_file(result_matches[0])
            if result is not None:
                return RunLookup(
                    run_id=result.id,
                    run_dir=Path(result.async_dir) if result.async_dir else None,
                    result=result,
                )
        raise RunNotFoundError(f"Run not found: {run_id}")

    def cleanup_artifacts(self, max_age_days: Optional[int] = None) -> int:
        days = self._config.artifact_cleanup_days if max_age_days is None else max_age_days
        return cleanup_old_artifacts(self._config.artifacts_dir, days, force=True)
