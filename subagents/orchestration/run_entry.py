"""
Background Run Entry Point — The Detached Half of an Async Run.

    python -m subagents.orchestration.run_entry /tmp/subagents-run-XXXX.json

The foreground process serializes a BackgroundRunConfig to a temp file and
launches this module in a new session. The config file is deleted as soon
as it has been read. From then on the only channel back to the launching
process is the filesystem: status.json and events.jsonl are updated at
every step transition, a run log is written at the end, and finally the
result-correlation file appears in the results directory.

stdout is never written to; structlog goes to ``runner.log`` in the run
directory.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

import structlog

from subagents.config import OrchestrationConfig
from subagents.orchestration.agents import AgentRegistry
from subagents.orchestration.artifacts import ArtifactStore
from subagents.orchestration.executors import run_chain
from subagents.orchestration.models import (
    BackgroundRunConfig,
    RunResultFile,
    RunStatus,
    StepOutcome,
    StepStatus,
    TaskResult,
    TaskSpec,
    TokenUsage,
)
from subagents.orchestration.runners import ProcessWorkerRunner, RunOptions
from subagents.orchestration.share import (
    find_latest_session_file,
    parse_session_tokens,
    share_session,
)
from subagents.orchestration.status import (
    RUN_COMPLETED,
    RUN_STARTED,
    RUNNER_LOG_FILE,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_STARTED,
    RunStatusStore,
    write_result_file,
)
from subagents.orchestration.truncation import truncate_output

logger = structlog.get_logger(__name__)


def chain_label(steps: list[TaskSpec]) -> str:
    """``scout`` for a single step, ``chain:scout->planner`` for chains."""
    if len(steps) == 1:
        return steps[0].agent
    return "chain:" + "->".join(step.agent for step in steps)


class BackgroundRun:
    """Executes one BackgroundRunConfig and keeps its run directory current."""

    def __init__(self, cfg: BackgroundRunConfig, config: Optional[OrchestrationConfig] = None):
        self.cfg = cfg
        config = config or OrchestrationConfig()
        if cfg.worker_command:
            config = config.model_copy(update={"worker_command": cfg.worker_command})
        self.config = config
        self.store = RunStatusStore(Path(cfg.async_dir))
        self.status = RunStatus(
            run_id=cfg.id,
            mode="chain" if len(cfg.steps) > 1 else "single",
            pid=os.getpid(),
            cwd=cfg.cwd,
            steps=[StepStatus(agent=step.agent) for step in cfg.steps],
            artifacts_dir=cfg.artifacts_dir,
            session_dir=cfg.session_dir,
            output_file=str(self.store.output_path),
        )
        self._artifacts = (
            ArtifactStore(Path(cfg.artifacts_dir), cfg.artifact_config)
            if cfg.artifacts_dir and cfg.artifact_config.enabled
            else None
        )
        self._previous_tokens = TokenUsage()
        self._step_started: dict[int, float] = {}

    # ------------------------------------------------------------------
    # Step hooks
    # ------------------------------------------------------------------

    def _options_for(self, index: int) -> RunOptions:
        if self.cfg.task_index is not None:
            artifact_index: Optional[int] = self.cfg.task_index
        else:
            artifact_index = index if len(self.cfg.steps) > 1 else None
        return RunOptions(
            run_id=self.cfg.id,
            index=artifact_index,
            cwd=self.cfg.cwd,
            max_output=self.cfg.max_output,
            artifacts=self._artifacts,
            session_dir=self.cfg.session_dir,
            output_log=self.store.output_path,
        )

    def on_step_start(self, index: int, step: TaskSpec) -> None:
        now = time.time()
        self._step_started[index] = now
        self.status.current_step = index
        self.status.steps[index].transition("running")
        self.status.steps[index].started_at = now
        self.store.write(self.status)
        self.store.append_event(STEP_STARTED, self.cfg.id, step_index=index, agent=step.agent)

    def on_step_end(self, index: int, step: TaskSpec, result: TaskResult) -> None:
        now = time.time()
        tokens = self._step_tokens(result)
        entry = self.status.steps[index]
        entry.transition("complete" if result.succeeded else "failed")
        entry.ended_at = now
        entry.duration_ms = int((now - self._step_started.get(index, now)) * 1000)
        entry.exit_code = result.exit_code
        entry.error = result.error
        entry.tokens = tokens
        self.status.total_tokens = self._previous_tokens.model_copy()
        self.store.write(self.status)
        self.store.append_event(
            STEP_COMPLETED if result.succeeded else STEP_FAILED,
            self.cfg.id,
            step_index=index,
            agent=step.agent,
            exit_code=result.exit_code,
            duration_ms=entry.duration_ms,
            tokens=tokens.model_dump(),
        )

    def _step_tokens(self, result: TaskResult) -> TokenUsage:
        """Per-step usage: the delta of the session's cumulative token count."""
        cumulative = parse_session_tokens(self.cfg.session_dir) if self.cfg.session_dir else None
        if cumulative is None:
            usage = result.usage
            step = TokenUsage(input=usage.input, output=usage.output, total=usage.input + usage.output)
            cumulative = TokenUsage(
                input=self._previous_tokens.input + step.input,
                output=self._previous_tokens.output + step.output,
                total=self._previous_tokens.total + step.total,
            )
        else:
            step = cumulative.minus(self._previous_tokens)
        self._previous_tokens = cumulative
        return step

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> RunResultFile:
        started = self.status.started_at
        self.status.transition("running")
        self.store.write(self.status)
        self.store.append_event(
            RUN_STARTED, self.cfg.id, mode=self.status.mode, cwd=self.cfg.cwd, pid=os.getpid()
        )
        logger.info("background.start", run_id=self.cfg.id, steps=len(self.cfg.steps))

        runner = ProcessWorkerRunner(
            self.config, AgentRegistry.bare(step.agent for step in self.cfg.steps)
        )
        try:
            outcome = await run_chain(
                runner,
                self.cfg.steps,
                self._options_for,
                placeholder=self.cfg.placeholder,
                on_step_start=self.on_step_start,
                on_step_end=self.on_step_end,
            )
            results = outcome.results
            success = outcome.success and len(results) == len(self.cfg.steps)
            crash: Optional[str] = None
        except Exception as exc:
            logger.error("background.crashed", run_id=self.cfg.id, error=str(exc), exc_info=True)
            results = []
            success = False
            crash = str(exc) or type(exc).__name__
            now = time.time()
            for step in self.status.steps:
                if step.status == "running":
                    step.transition("failed")
                    step.ended_at = now
                    step.error = crash

        outcomes = [
            StepOutcome(
                agent=r.agent,
                output=r.final_output.strip(),
                success=r.succeeded,
                artifact_paths=r.artifact_paths,
                truncated=bool(r.truncation and r.truncation.truncated),
            )
            for r in results
        ]
        summary = "\n\n".join(f"{o.agent}:\n{o.output}" for o in outcomes)
        truncated = False
        if self.cfg.max_output is not None:
            last_output = outcomes[-1].artifact_paths.output_path if (
                outcomes and outcomes[-1].artifact_paths
            ) else None
            cut = truncate_output(summary, self.cfg.max_output, artifact_path=last_output)
            if cut.truncated:
                summary, truncated = cut.text, True

        if self.cfg.share and self.cfg.session_dir:
            shared = await share_session(self.cfg.session_dir, self.cfg.share_viewer_url)
            self.status.session_file = shared.session_file
            self.status.share_url = shared.share_url
            self.status.gist_url = shared.gist_url
            self.status.share_error = shared.error
        elif self.cfg.session_dir:
            latest = find_latest_session_file(self.cfg.session_dir)
            self.status.session_file = str(latest) if latest else None

        ended = time.time()
        self.status.ended_at = ended
        self.status.transition("complete" if success else "failed")
        if not success:
            failed = next((s for s in self.status.steps if s.status == "failed"), None)
            self.status.error = crash or (f"Step failed: {failed.agent}" if failed else "Run failed")
        self.store.write(self.status)
        duration_ms = int((ended - started) * 1000)
        self.store.append_event(
            RUN_COMPLETED,
            self.cfg.id,
            status=self.status.state,
            duration_ms=duration_ms,
        )
        try:
            self.store.write_run_log(self.status, summary, truncated)
        except OSError as exc:
            logger.warning("background.run_log_failed", error=str(exc))

        result_file = RunResultFile(
            id=self.cfg.id,
            agent=chain_label(self.cfg.steps),
            success=success,
            summary=summary,
            results=outcomes,
            exit_code=0 if success else 1,
            timestamp=ended,
            duration_ms=duration_ms,
            truncated=truncated,
            artifacts_dir=self.cfg.artifacts_dir,
            cwd=self.cfg.cwd,
            async_dir=self.cfg.async_dir,
            session_id=self.cfg.session_id,
            session_file=self.status.session_file,
            share_url=self.status.share_url,
            gist_url=self.status.gist_url,
            share_error=self.status.share_error,
            task_index=self.cfg.task_index,
            total_tasks=self.cfg.total_tasks,
        )
        write_result_file(Path(self.cfg.result_path), result_file)
        logger.info("background.complete", run_id=self.cfg.id, success=success, duration_ms=duration_ms)
        return result_file


def load_config_file(path: Path) -> BackgroundRunConfig:
    """Read the hand-off file and delete it."""
    try:
        raw = path.read_text(encoding="utf-8")
    finally:
        path.unlink(missing_ok=True)
    return BackgroundRunConfig.model_validate_json(raw)


def main(argv: Optional[list[str]] = None) -> int:
    from subagents.main import configure_logging

    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        sys.stderr.write("usage: python -m subagents.orchestration.run_entry <config.json>\n")
        return 2

    cfg = load_config_file(Path(args[0]))
    Path(cfg.async_dir).mkdir(parents=True, exist_ok=True)
    configure_logging(log_file=Path(cfg.async_dir) / RUNNER_LOG_FILE, level=logging.INFO, force=True)

    result = asyncio.run(BackgroundRun(cfg).run())
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
