"""
Subagent Orchestration — Delegating Work to Worker Processes.

Each delegated task runs as its own worker-agent process whose streamed JSON
events are folded into live progress. Tasks run alone, fanned out under a
concurrency limit, or chained so that each step sees the previous step's
output. Background runs are detached processes that report back only
through files on disk.
"""

from __future__ import annotations

from subagents.orchestration.models import (
    OrchestrationResult,
    Progress,
    RunConfig,
    RunStatus,
    TaskResult,
    TaskSpec,
)

__all__ = [
    "OrchestrationResult",
    "Progress",
    "RunConfig",
    "RunStatus",
    "TaskResult",
    "TaskSpec",
]
