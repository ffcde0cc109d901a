"""Tests for subagents.orchestration.supervisor — launching and watching runs."""

from __future__ import annotations

import asyncio
import subprocess
import sys
import time
from pathlib import Path

import pytest

from subagents.events import EventBus
from subagents.orchestration.models import AsyncJob, RunResultFile, RunStatus, StepStatus, TaskSpec
from subagents.orchestration.status import (
    RUN_COMPLETED,
    RUN_STARTED,
    RunStatusStore,
    read_status,
    result_path_for,
    write_result_file,
)
from subagents.orchestration.supervisor import AsyncRunSupervisor, list_runs, new_run_id

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _result(run_id: str, session_id: str | None, cwd: str | None = None) -> RunResultFile:
    return RunResultFile(id=run_id, agent="scout", success=True, summary="done", session_id=session_id, cwd=cwd)


def _track(bus: EventBus) -> list:
    seen: list = []
    bus.subscribe("*", seen.append)
    return seen


def test_new_run_id_is_short_and_unique():
    ids = {new_run_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(len(i) == 12 for i in ids)


# ---------------------------------------------------------------------------
# Result watching
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_results_are_filtered_by_session(config, tmp_path):
    bus = EventBus()
    await bus.start()
    events = _track(bus)
    mine = AsyncRunSupervisor(config, event_bus=bus, session_id="S1", cwd=str(tmp_path))
    other = AsyncRunSupervisor(config, session_id="S2", cwd=str(tmp_path))

    config.results_dir.mkdir(parents=True)
    path = result_path_for(config.results_dir, "run1")
    write_result_file(path, _result("run1", "S1", cwd=str(tmp_path)))

    assert other.scan_results_once() == []
    assert path.exists()

    handled = mine.scan_results_once()
    assert [r.id for r in handled] == ["run1"]
    assert not path.exists()
    await bus.stop()

    completed = [e for e in events if e.event_type == "run.completed"]
    assert len(completed) == 1
    assert completed[0].run_id == "run1"
    assert completed[0].summary == "done"


@pytest.mark.asyncio
async def test_untagged_results_fall_back_to_cwd(config, tmp_path):
    sup = AsyncRunSupervisor(config, session_id="S1", cwd=str(tmp_path))
    config.results_dir.mkdir(parents=True)
    write_result_file(result_path_for(config.results_dir, "a"), _result("a", None, cwd=str(tmp_path)))
    write_result_file(result_path_for(config.results_dir, "b"), _result("b", None, cwd="/elsewhere"))
    assert [r.id for r in sup.scan_results_once()] == ["a"]


def test_results_announced_once(config, tmp_path):
    sup = AsyncRunSupervisor(config, session_id="S1", cwd=str(tmp_path))
    config.results_dir.mkdir(parents=True)
    path = result_path_for(config.results_dir, "r")
    write_result_file(path, _result("r", "S1"))
    assert len(sup.scan_results_once()) == 1
    write_result_file(path, _result("r", "S1"))
    assert sup.scan_results_once() == []

    sup.start_session("S1")
    assert len(sup.scan_results_once()) == 1


# ---------------------------------------------------------------------------
# Status polling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_poller_follows_status_file(config, tmp_path):
    bus = EventBus()
    await bus.start()
    events = _track(bus)
    sup = AsyncRunSupervisor(config, event_bus=bus, session_id="S1")
    run_dir = config.async_dir / "job1"
    sup._jobs["job1"] = AsyncJob(async_id="job1", async_dir=str(run_dir), steps_total=2)

    sup.poll_once()
    assert sup.get("job1").status_missing

    store = RunStatusStore(run_dir)
    status = RunStatus(run_id="job1", mode="chain", steps=[StepStatus(agent="a"), StepStatus(agent="b")])
    status.transition("running")
    status.current_step = 1
    store.write(status)
    sup.poll_once()
    job = sup.get("job1")
    assert not job.status_missing
    assert job.status == "running"
    assert job.current_step == 1

    status.transition("complete")
    status.ended_at = time.time() - 1
    store.write(status)
    sup.poll_once()
    assert sup.get("job1").status == "complete"
    assert sup.get("job1").finished_at is not None

    # Zero retention: the terminal job leaves the table on the next pass.
    sup.poll_once()
    assert sup.get("job1") is None
    await bus.stop()

    changes = [e for e in events if e.event_type == "job.status.changed"]
    assert [e.status for e in changes] == ["running", "complete"]


@pytest.mark.asyncio
async def test_start_stop_and_session_reset(config):
    sup = AsyncRunSupervisor(config, session_id="S1")
    await sup.start()
    assert sup.is_running
    sup._jobs["x"] = AsyncJob(async_id="x", async_dir="/nowhere")
    sup.start_session("S2", cwd="/tmp")
    assert sup.session_id == "S2"
    assert sup.jobs == []
    await sup.stop()
    assert not sup.is_running


def test_list_runs_newest_first(tmp_path):
    for run_id, started in (("old", 100.0), ("new", 200.0)):
        RunStatusStore(tmp_path / run_id).write(RunStatus(run_id=run_id, started_at=started))
    (tmp_path / "stray").mkdir()
    assert [job.async_id for job in list_runs(tmp_path)] == ["new", "old"]
    assert list_runs(tmp_path / "missing") == []


def test_launch_requires_steps(config):
    with pytest.raises(ValueError):
        AsyncRunSupervisor(config).launch([], cwd="/tmp")


# ---------------------------------------------------------------------------
# End to end: a real detached run
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_detached_run_end_to_end(config, tmp_path, monkeypatch):
    monkeypatch.setenv("PYTHONPATH", str(PROJECT_ROOT))
    bus = EventBus()
    await bus.start()
    events = _track(bus)
    sup = AsyncRunSupervisor(config, event_bus=bus, session_id="S1", cwd=str(tmp_path))

    job = sup.launch(
        [TaskSpec(agent="scout", task="background hello")],
        cwd=str(tmp_path),
        session_dir=str(tmp_path / "sessions"),
    )
    assert job.status == "queued"
    assert job.session_dir == str(tmp_path / "sessions" / f"async-{job.async_id}")

    results: list[RunResultFile] = []
    deadline = time.monotonic() + 60
    while not results and time.monotonic() < deadline:
        sup.poll_once()
        results = sup.scan_results_once()
        await asyncio.sleep(0.1)
    await bus.stop()

    assert results, (Path(job.async_dir) / "runner.log").read_text()
    result = results[0]
    assert result.id == job.async_id
    assert result.success
    assert result.summary == "scout:\nbackground hello"

    status = read_status(Path(job.async_dir))
    assert status.state == "complete"
    assert status.total_tokens.total == 15

    types = [e["type"] for e in RunStatusStore(Path(job.async_dir)).read_events()]
    assert types[0] == RUN_STARTED
    assert types[-1] == RUN_COMPLETED
    assert (Path(job.async_dir) / f"run-log-{job.async_id}.md").exists()
    assert not result_path_for(config.results_dir, job.async_id).exists()

    kinds = [e.event_type for e in events]
    assert kinds[0] == "run.started"
    assert "run.completed" in kinds


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------


def test_result_file_kept_without_event_bus(config, tmp_path):
    sup = AsyncRunSupervisor(config, session_id="S1", cwd=str(tmp_path))
    config.results_dir.mkdir(parents=True)
    path = result_path_for(config.results_dir, "r")
    write_result_file(path, _result("r", "S1"))
    assert len(sup.scan_results_once()) == 1
    assert path.exists()
    assert sup.scan_results_once() == []


@pytest.mark.asyncio
async def test_announced_names_released_after_delete(config, tmp_path):
    bus = EventBus()
    await bus.start()
    sup = AsyncRunSupervisor(config, event_bus=bus, session_id="S1", cwd=str(tmp_path))
    config.results_dir.mkdir(parents=True)
    for run_id in ("a", "b", "c"):
        write_result_file(result_path_for(config.results_dir, run_id), _result(run_id, "S1"))
    assert len(sup.scan_results_once()) == 3
    assert sup._announced == set()
    assert list(config.results_dir.glob("*.json")) == []
    await bus.stop()


@pytest.mark.asyncio
async def test_runner_exit_without_status_marks_job_crashed(config):
    bus = EventBus()
    await bus.start()
    events = _track(bus)
    sup = AsyncRunSupervisor(config, event_bus=bus, session_id="S1")
    run_dir = config.async_dir / "dead1"
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    sup._procs["dead1"] = proc
    sup._jobs["dead1"] = AsyncJob(async_id="dead1", async_dir=str(run_dir), pid=proc.pid)

    sup.poll_once()
    job = sup.get("dead1")
    assert job.crashed
    assert job.status_missing
    assert job.status == "failed"
    assert job.is_terminal

    # Zero retention: dropped on the next pass.
    sup.poll_once()
    assert sup.get("dead1") is None
    await bus.stop()

    changes = [e for e in events if e.event_type == "job.status.changed"]
    assert len(changes) == 1
    assert changes[0].crashed
    assert changes[0].status == "failed"


def test_status_file_failure_is_not_a_crash(config):
    sup = AsyncRunSupervisor(config, session_id="S1")
    run_dir = config.async_dir / "f1"
    status = RunStatus(run_id="f1", steps=[StepStatus(agent="a")])
    status.transition("running")
    status.transition("failed")
    RunStatusStore(run_dir).write(status)
    sup._jobs["f1"] = AsyncJob(async_id="f1", async_dir=str(run_dir))
    sup.poll_once()
    job = sup.get("f1")
    assert job.status == "failed"
    assert not job.crashed
