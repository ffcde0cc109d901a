"""Tests for subagents.orchestration.executors — parallel pool and chains."""

from __future__ import annotations

import asyncio

import pytest

from subagents.orchestration.executors import (
    map_concurrent,
    run_chain,
    run_parallel,
    substitute_placeholder,
)
from subagents.orchestration.models import Progress, TaskResult, TaskSpec, TruncationResult
from subagents.orchestration.runners import RunOptions, WorkerRunnerBase


def _result(spec: TaskSpec, text: str, exit_code: int = 0) -> TaskResult:
    return TaskResult(
        agent=spec.agent,
        task=spec.task,
        exit_code=exit_code,
        error=None if exit_code == 0 else "failed on purpose",
        messages=[{"role": "assistant", "content": [{"type": "text", "text": text}]}],
        progress=Progress(agent=spec.agent, task=spec.task, status="completed" if exit_code == 0 else "failed"),
    )


class RecordingRunner(WorkerRunnerBase):
    """Echoes each task back, tracking how many run at once."""

    def __init__(self, delays: dict[str, float] | None = None, fail: set[str] | None = None):
        self.delays = delays or {}
        self.fail = fail or set()
        self.in_flight = 0
        self.peak = 0
        self.seen: list[TaskSpec] = []

    async def run(self, spec: TaskSpec, options: RunOptions) -> TaskResult:
        self.seen.append(spec)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(spec.task, 0.01))
            if options.on_update is not None:
                options.on_update(Progress(index=options.index or 0, agent=spec.agent, status="running"))
            return _result(spec, f"out:{spec.task}", 1 if spec.task in self.fail else 0)
        finally:
            self.in_flight -= 1


def _options_for(index: int) -> RunOptions:
    return RunOptions(run_id="r", index=index)


@pytest.mark.asyncio
async def test_map_concurrent_bounds_and_order():
    in_flight = 0
    peak = 0

    async def work(item: int, index: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01 * (5 - item % 5))
        in_flight -= 1
        return item * 10 + index

    results = await map_concurrent(list(range(10)), 3, work)
    assert results == [i * 11 for i in range(10)]
    assert peak <= 3


@pytest.mark.asyncio
async def test_map_concurrent_empty_and_oversized_limit():
    assert await map_concurrent([], 4, lambda i, n: asyncio.sleep(0)) == []

    async def double(item, _):
        return item * 2

    assert await map_concurrent([1, 2], 50, double) == [2, 4]


@pytest.mark.asyncio
async def test_parallel_preserves_input_order_and_limit():
    specs = [TaskSpec(agent="scout", task=f"t{i}") for i in range(6)]
    runner = RecordingRunner(delays={"t0": 0.1, "t1": 0.05})
    outcome = await run_parallel(runner, specs, _options_for, limit=2)

    assert [r.final_output for r in outcome.results] == [f"out:t{i}" for i in range(6)]
    assert runner.peak <= 2
    assert outcome.all_succeeded


@pytest.mark.asyncio
async def test_parallel_failure_does_not_cancel_siblings():
    specs = [TaskSpec(agent="a", task="ok1"), TaskSpec(agent="b", task="bad"), TaskSpec(agent="c", task="ok2")]
    outcome = await run_parallel(RecordingRunner(fail={"bad"}), specs, _options_for, limit=4)
    assert outcome.succeeded == 2
    assert outcome.total == 3
    assert not outcome.all_succeeded
    assert [r.succeeded for r in outcome.results] == [True, False, True]


@pytest.mark.asyncio
async def test_parallel_progress_board():
    boards: list[list[Progress]] = []
    specs = [TaskSpec(agent="a", task="x"), TaskSpec(agent="b", task="y")]
    await run_parallel(RecordingRunner(), specs, _options_for, limit=2, on_progress=boards.append)
    assert boards
    assert all(len(board) == 2 for board in boards)


def test_substitute_placeholder_replaces_every_occurrence():
    assert substitute_placeholder("{previous} and {previous}", "{previous}", "X") == "X and X"
    assert substitute_placeholder("no marker", "{previous}", "X") == "no marker"
    assert substitute_placeholder("{p}", "", "X") == "{p}"


@pytest.mark.asyncio
async def test_chain_threads_previous_output():
    runner = RecordingRunner()
    specs = [
        TaskSpec(agent="scout", task="find"),
        TaskSpec(agent="planner", task="plan from {previous}"),
        TaskSpec(agent="worker", task=""),
    ]
    starts: list[int] = []
    ends: list[tuple[int, bool]] = []
    outcome = await run_chain(
        runner,
        specs,
        _options_for,
        on_step_start=lambda i, step: starts.append(i),
        on_step_end=lambda i, step, r: ends.append((i, r.succeeded)),
    )

    assert outcome.success
    assert [s.task for s in runner.seen] == ["find", "plan from out:find", "out:plan from out:find"]
    assert outcome.output == "out:out:plan from out:find"
    assert starts == [0, 1, 2]
    assert ends == [(0, True), (1, True), (2, True)]
    assert outcome.failed_step is None


@pytest.mark.asyncio
async def test_chain_stops_at_first_failure():
    runner = RecordingRunner(fail={"step2"})
    specs = [
        TaskSpec(agent="a", task="step1"),
        TaskSpec(agent="b", task="step2"),
        TaskSpec(agent="c", task="step3 {previous}"),
    ]
    outcome = await run_chain(runner, specs, _options_for)
    assert not outcome.success
    assert len(outcome.results) == 2
    assert outcome.failed_step == 1
    assert outcome.total_steps == 3
    assert [s.agent for s in runner.seen] == ["a", "b"]


@pytest.mark.asyncio
async def test_chain_uses_untruncated_previous_output():
    class TruncatingRunner(RecordingRunner):
        async def run(self, spec, options):
            result = await super().run(spec, options)
            result.truncation = TruncationResult(text="[TRUNCATED: ...]\nout", truncated=True)
            return result

    runner = TruncatingRunner()
    specs = [TaskSpec(agent="a", task="first"), TaskSpec(agent="b", task="{previous}")]
    outcome = await run_chain(runner, specs, _options_for)
    assert runner.seen[1].task == "out:first"
    assert outcome.output.startswith("[TRUNCATED:")


@pytest.mark.asyncio
async def test_chain_honours_cancel_before_step():
    cancel = asyncio.Event()
    cancel.set()
    runner = RecordingRunner()
    outcome = await run_chain(runner, [TaskSpec(agent="a", task="x")], _options_for, cancel_event=cancel)
    assert not outcome.success
    assert outcome.results == []
    assert runner.seen == []
