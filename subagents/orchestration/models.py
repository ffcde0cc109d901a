"""
Orchestration Data Models — The Language of Delegation.

These Pydantic models define the contract between the orchestrator and its
worker processes. Every delegated task, every streamed progress snapshot and
every durable run record flows through these structures.

TaskSpec describes *what* to do. TaskResult describes *what happened*.
Progress is the live view of a task while it runs. RunStatus is the durable,
on-disk record of a background run, and RunResultFile is the correlation file
written once a run finishes.
"""

from __future__ import annotations

import time
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

Topology = Literal["single", "parallel", "chain"]
RunMode = Literal["single", "chain"]
RunState = Literal["queued", "running", "complete", "failed"]
StepState = Literal["pending", "running", "complete", "failed"]
ProgressState = Literal["pending", "running", "completed", "failed"]

# Allowed forward moves of the two durable state machines.
_RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"running", "complete", "failed"}),
    "running": frozenset({"complete", "failed"}),
    "complete": frozenset(),
    "failed": frozenset(),
}
_STEP_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "complete", "failed"}),
    "running": frozenset({"complete", "failed"}),
    "complete": frozenset(),
    "failed": frozenset(),
}

TERMINAL_STATES = frozenset({"complete", "failed"})


# ---------------------------------------------------------------------------
# Task definition
# ---------------------------------------------------------------------------


class TaskSpec(BaseModel):
    """One delegated unit of work. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    agent: str
    task: str
    cwd: Optional[str] = None
    model: Optional[str] = None  # overrides the agent's default model
    tools: Optional[list[str]] = None  # overrides the agent's tool list
    system_prompt: Optional[str] = None  # overrides the agent's system prompt

    def with_task(self, task: str) -> "TaskSpec":
        return self.model_copy(update={"task": task})


class MaxOutputConfig(BaseModel):
    """Dual truncation budget."""

    max_bytes: int = 200 * 1024
    max_lines: int = 5000


class ArtifactConfig(BaseModel):
    """Which per-task artifacts to persist and how long to keep them."""

    enabled: bool = True
    include_input: bool = True
    include_output: bool = True
    include_jsonl: bool = True
    include_metadata: bool = True
    cleanup_days: int = 7


class RunConfig(BaseModel):
    """A fully resolved orchestration request."""

    topology: Topology
    tasks: list[TaskSpec] = Field(default_factory=list)
    concurrency: int = 4
    max_output: Optional[MaxOutputConfig] = None
    artifact_config: ArtifactConfig = Field(default_factory=ArtifactConfig)
    run_async: bool = False
    share: bool = False
    session_dir: Optional[str] = None
    cwd: Optional[str] = None
    placeholder: str = "{previous}"

    @model_validator(mode="after")
    def check_shape(self) -> "RunConfig":
        if not self.tasks:
            raise ValueError("A run needs at least one task")
        if self.topology == "single" and len(self.tasks) != 1:
            raise ValueError("Single mode takes exactly one task")
        self.concurrency = max(1, int(self.concurrency))
        return self


# ---------------------------------------------------------------------------
# Live progress
# ---------------------------------------------------------------------------


class RecentTool(BaseModel):
    tool: str
    args: str = ""
    end_time: float = Field(default_factory=time.time)


class Progress(BaseModel):
    """Live, mutable summary of one in-flight task.

    Owned by the runner executing the task; callers only ever receive
    snapshots (see :meth:`snapshot`).
    """

    index: int = 0
    agent: str
    task: str = ""
    status: ProgressState = "pending"
    current_tool: Optional[str] = None
    current_tool_args: Optional[str] = None
    recent_tools: list[RecentTool] = Field(default_factory=list)
    recent_output: list[str] = Field(default_factory=list)
    tool_count: int = 0
    tokens: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    failed_tool: Optional[str] = None

    def snapshot(self) -> "Progress":
        return self.model_copy(deep=True)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class Usage(BaseModel):
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    cost: float = 0.0
    turns: int = 0


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0

    def minus(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input=self.input - other.input,
            output=self.output - other.output,
            total=self.total - other.total,
        )


class ArtifactPaths(BaseModel):
    input_path: str
    output_path: str
    jsonl_path: str
    metadata_path: str


class TruncationResult(BaseModel):
    text: str
    truncated: bool = False
    original_bytes: Optional[int] = None
    original_lines: Optional[int] = None
    artifact_path: Optional[str] = None


class TaskResult(BaseModel):
    """Terminal record of one worker invocation."""

    agent: str
    task: str
    exit_code: int = 0
    messages: list[dict[str, Any]] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: Optional[str] = None
    error: Optional[str] = None
    session_file: Optional[str] = None
    share_url: Optional[str] = None
    gist_url: Optional[str] = None
    share_error: Optional[str] = None
    artifact_paths: Optional[ArtifactPaths] = None
    truncation: Optional[TruncationResult] = None
    progress: Optional[Progress] = None

    @property
    def succeeded(self) -> bool:
        """Exit 0 and no error, either from the worker or reclassified."""
        return self.exit_code == 0 and not self.error

    @property
    def final_output(self) -> str:
        """Untruncated text of the last assistant exchange."""
        from subagents.orchestration.stream import get_final_output

        return get_final_output(self.messages)

    @property
    def output(self) -> str:
        """Display output: the truncated text when a budget cut it."""
        if self.truncation is not None and self.truncation.truncated:
            return self.truncation.text
        return self.final_output


class OrchestrationResult(BaseModel):
    """What the top-level orchestrator hands back to its caller."""

    mode: Topology
    text: str = ""
    is_error: bool = False
    results: list[TaskResult] = Field(default_factory=list)
    succeeded_count: int = 0
    total_count: int = 0
    async_id: Optional[str] = None
    async_dir: Optional[str] = None
    progress: Optional[list[Progress]] = None
    artifacts_dir: Optional[str] = None
    artifact_files: list[ArtifactPaths] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    # Chain observability
    chain_agents: Optional[list[str]] = None
    total_steps: Optional[int] = None
    current_step_index: Optional[int] = None


# ---------------------------------------------------------------------------
# Durable async run state
# ---------------------------------------------------------------------------


class StepStatus(BaseModel):
    agent: str
    status: StepState = "pending"
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    duration_ms: Optional[int] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    tokens: Optional[TokenUsage] = None

    def transition(self, new_status: StepState) -> None:
        if new_status == self.status:
            return
        if new_status not in _STEP_TRANSITIONS[self.status]:
            raise ValueError(f"Step cannot move from {self.status} to {new_status}")
        self.status = new_status


class RunStatus(BaseModel):
    """Authoritative on-disk record of a background run."""

    run_id: str
    mode: RunMode = "single"
    state: RunState = "queued"
    started_at: float = Field(default_factory=time.time)
    ended_at: Optional[float] = None
    last_update: float = Field(default_factory=time.time)
    pid: Optional[int] = None
    cwd: Optional[str] = None
    current_step: int = 0
    steps: list[StepStatus] = Field(default_factory=list)
    artifacts_dir: Optional[str] = None
    session_dir: Optional[str] = None
    output_file: Optional[str] = None
    total_tokens: Optional[TokenUsage] = None
    session_file: Optional[str] = None
    share_url: Optional[str] = None
    gist_url: Optional[str] = None
    share_error: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: RunState) -> None:
        if new_state == self.state:
            return
        if new_state not in _RUN_TRANSITIONS[self.state]:
            raise ValueError(f"Run cannot move from {self.state} to {new_state}")
        self.state = new_state
        self.last_update = time.time()


class StepOutcome(BaseModel):
    agent: str
    output: str = ""
    success: bool = True
    artifact_paths: Optional[ArtifactPaths] = None
    truncated: bool = False


class RunResultFile(BaseModel):
    """Result-correlation file written once per run to the results directory."""

    id: str
    agent: str
    success: bool
    summary: str = ""
    results: list[StepOutcome] = Field(default_factory=list)
    exit_code: int = 0
    timestamp: float = Field(default_factory=time.time)
    duration_ms: int = 0
    truncated: bool = False
    artifacts_dir: Optional[str] = None
    cwd: Optional[str] = None
    async_dir: Optional[str] = None
    session_id: Optional[str] = None
    session_file: Optional[str] = None
    share_url: Optional[str] = None
    gist_url: Optional[str] = None
    share_error: Optional[str] = None
    task_index: Optional[int] = None
    total_tasks: Optional[int] = None


class AsyncJob(BaseModel):
    """Foreground cache entry for one background run."""

    async_id: str
    async_dir: str
    status: RunState = "queued"
    mode: RunMode = "single"
    agents: list[str] = Field(default_factory=list)
    current_step: Optional[int] = None
    steps_total: Optional[int] = None
    started_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    finished_at: Optional[float] = None
    pid: Optional[int] = None
    session_dir: Optional[str] = None
    output_file: Optional[str] = None
    total_tokens: Optional[TokenUsage] = None
    session_file: Optional[str] = None
    share_url: Optional[str] = None
    status_missing: bool = False
    crashed: bool = False  # runner exited without writing a status file

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class BackgroundRunConfig(BaseModel):
    """Serialized hand-off from the foreground process to the background runner."""

    id: str
    steps: list[TaskSpec]
    result_path: str
    cwd: str
    placeholder: str = "{previous}"
    max_output: Optional[MaxOutputConfig] = None
    artifacts_dir: Optional[str] = None
    artifact_config: ArtifactConfig = Field(default_factory=ArtifactConfig)
    share: bool = False
    session_dir: Optional[str] = None
    async_dir: str
    session_id: Optional[str] = None
    task_index: Optional[int] = None
    total_tasks: Optional[int] = None
    worker_command: Optional[str] = None  # foreground's worker command, when overridden
    share_viewer_url: str = ""
