"""
Shared fixtures for the subagents test suite.

Worker processes in these tests are real subprocesses running
``tests/fake_worker.py`` under the current interpreter, so runners,
executors and the background entry point are exercised end to end.
"""

from __future__ import annotations

import json
import logging
import shlex
import sys
from pathlib import Path

import pytest

from subagents.config import OrchestrationConfig
from subagents.main import configure_logging
from subagents.orchestration.agents import AgentRegistry

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


def write_agent(directory: Path, name: str, body: str = "", **meta) -> Path:
    """Write a JSON-frontmatter agent definition."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.md"
    path.write_text(
        "---\n" + json.dumps({"name": name, **meta}) + "\n---\n\n" + body,
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True, scope="session")
def _quiet_logging():
    """Route structlog through stdlib logging at WARNING, off stdout."""
    configure_logging(level=logging.WARNING, force=True)


@pytest.fixture()
def fake_worker_command() -> str:
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(FAKE_WORKER))}"


@pytest.fixture()
def agents_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "agents"
    write_agent(directory, "scout", "You are a scout.", description="Recon", tools=["read", "bash"])
    write_agent(directory, "planner", "You plan.", model="plan-model")
    write_agent(directory, "worker")
    return directory


@pytest.fixture()
def config(tmp_path: Path, fake_worker_command: str, agents_dir: Path) -> OrchestrationConfig:
    return OrchestrationConfig(
        worker_command=fake_worker_command,
        agents_dirs=[str(agents_dir)],
        results_dir=tmp_path / "results",
        async_dir=tmp_path / "runs",
        artifacts_dir=tmp_path / "artifacts",
        poll_interval=0.05,
        job_retention_seconds=0.0,
        kill_grace_seconds=1.0,
    )


@pytest.fixture()
def registry(agents_dir: Path) -> AgentRegistry:
    return AgentRegistry.from_directories([agents_dir])
