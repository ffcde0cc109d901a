"""
Topology Executors — Parallel Fan-Out and Sequential Chains.

Parallel runs use a pull-based pool: ``min(limit, N)`` workers share one
cursor and each loops "claim next index, run it, store the result at that
index" until the cursor is exhausted. Faster tasks pick up more work, at
most ``limit`` tasks are ever in flight, and results keep input order no
matter which finishes first. One task failing never cancels its siblings.

Chains run strictly in order. Before step *i* runs, every occurrence of the
placeholder in its task text is replaced with the untruncated final output
of step *i-1*. The first failing step stops the chain.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

import structlog

from subagents.orchestration.models import Progress, TaskResult, TaskSpec
from subagents.orchestration.runners import RunOptions, WorkerRunnerBase

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

OptionsFactory = Callable[[int], RunOptions]
StepStartHook = Callable[[int, TaskSpec], None]
StepEndHook = Callable[[int, TaskSpec, TaskResult], None]


async def map_concurrent(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T, int], Awaitable[R]],
) -> list[R]:
    """Apply *fn* to every item with at most *limit* calls in flight."""
    total = len(items)
    if total == 0:
        return []
    results: list[Optional[R]] = [None] * total
    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        while cursor < total:
            # Claim and advance with no await in between.
            index = cursor
            cursor += 1
            results[index] = await fn(items[index], index)

    await asyncio.gather(*(worker() for _ in range(min(max(1, limit), total))))
    return results  # type: ignore[return-value]


@dataclass
class ParallelOutcome:
    results: list[TaskResult]
    succeeded: int
    total: int

    @property
    def all_succeeded(self) -> bool:
        return self.succeeded == self.total


@dataclass
class ChainOutcome:
    results: list[TaskResult] = field(default_factory=list)
    success: bool = True
    total_steps: int = 0

    @property
    def output(self) -> str:
        """The last executed step's display output."""
        return self.results[-1].output if self.results else ""

    @property
    def failed_step(self) -> Optional[int]:
        if self.success or not self.results:
            return None
        return len(self.results) - 1


def substitute_placeholder(task: str, placeholder: str, previous: str) -> str:
    """Replace every literal occurrence of *placeholder* with *previous*."""
    if not placeholder:
        return task
    return task.replace(placeholder, previous)


async def run_parallel(
    runner: WorkerRunnerBase,
    specs: Sequence[TaskSpec],
    options_for: OptionsFactory,
    limit: int,
    on_progress: Optional[Callable[[list[Progress]], None]] = None,
) -> ParallelOutcome:
    """Run independent tasks under a concurrency limit."""
    board = [
        Progress(index=i, agent=spec.agent, task=spec.task) for i, spec in enumerate(specs)
    ]

    def track(index: int, base: RunOptions) -> RunOptions:
        forward = base.on_update

        def on_update(progress: Progress) -> None:
            board[index] = progress
            if forward is not None:
                forward(progress)
            if on_progress is not None:
                on_progress([p.snapshot() for p in board])

        base.on_update = on_update
        return base

    async def run_one(spec: TaskSpec, index: int) -> TaskResult:
        board[index].status = "running"
        result = await runner.run(spec, track(index, options_for(index)))
        if result.progress is not None:
            board[index] = result.progress
        return result

    logger.info("executor.parallel.start", tasks=len(specs), limit=limit)
    results = await map_concurrent(list(specs), limit, run_one)
    succeeded = sum(1 for r in results if r.succeeded)
    logger.info("executor.parallel.complete", succeeded=succeeded, total=len(results))
    return ParallelOutcome(results=results, succeeded=succeeded, total=len(results))


async def run_chain(
    runner: WorkerRunnerBase,
    specs: Sequence[TaskSpec],
    options_for: OptionsFactory,
    placeholder: str = "{previous}",
    on_step_start: Optional[StepStartHook] = None,
    on_step_end: Optional[StepEndHook] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ChainOutcome:
    """Run tasks one after another, threading each output into the next task."""
    outcome = ChainOutcome(total_steps=len(specs))
    previous = ""
    for index, spec in enumerate(specs):
        if cancel_event is not None and cancel_event.is_set():
            outcome.success = False
            break

        task = spec.task
        if index > 0:
            # An empty follow-up step means "continue from the previous output".
            task = substitute_placeholder(task or placeholder, placeholder, previous)
        step = spec.with_task(task) if task != spec.task else spec

        if on_step_start is not None:
            on_step_start(index, step)
        logger.info("executor.chain.step", index=index, agent=step.agent, total=len(specs))

        result = await runner.run(step, options_for(index))
        outcome.results.append(result)

        if on_step_end is not None:
            on_step_end(index, step, result)

        if not result.succeeded:
            outcome.success = False
            logger.info("executor.chain.halted", index=index, agent=step.agent, error=result.error)
            break
        previous = result.final_output

    return outcome
