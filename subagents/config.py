# subagents/config.py
"""
Configuration for the subagent orchestration engine.

All tunables flow through this module. Values are loaded from environment
variables (via a .env file) and validated with Pydantic, so the foreground
orchestrator and the detached background runner agree on the same limits and
the same on-disk locations.
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Annotated

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above subagents/),
# so the config works regardless of the caller's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"
_TMP_ROOT = Path(tempfile.gettempdir())


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → ["a", "b"]
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                value = json.loads(stripped)
            except json.JSONDecodeError:
                value = stripped.strip("[]")
        if isinstance(value, str):
            if "," in value:
                return [part.strip() for part in value.split(",") if part.strip()]
            return [value.strip()] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


# NoDecode: the validator above parses list values itself.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


def _default_agents_dirs() -> list[str]:
    return [str(Path.home() / ".subagents" / "agents"), ".subagents/agents"]


class OrchestrationConfig(BaseSettings):
    """Configuration for worker spawning, run supervision and persistence."""

    worker_command: str = Field("pi", alias="SUBAGENTS_WORKER_COMMAND")
    agents_dirs: StrList = Field(
        default_factory=_default_agents_dirs, alias="SUBAGENTS_AGENTS_DIRS"
    )

    # Topology limits
    max_parallel: int = Field(8, alias="SUBAGENTS_MAX_PARALLEL")
    max_concurrency: int = Field(4, alias="SUBAGENTS_MAX_CONCURRENCY")
    placeholder: str = Field("{previous}", alias="SUBAGENTS_PLACEHOLDER")

    # On-disk locations shared by foreground and background processes
    results_dir: Path = Field(_TMP_ROOT / "subagents-results", alias="SUBAGENTS_RESULTS_DIR")
    async_dir: Path = Field(_TMP_ROOT / "subagents-runs", alias="SUBAGENTS_ASYNC_DIR")
    artifacts_dir: Path = Field(
        _TMP_ROOT / "subagents-artifacts", alias="SUBAGENTS_ARTIFACTS_DIR"
    )

    # Output budget
    max_output_bytes: int = Field(200 * 1024, alias="SUBAGENTS_MAX_OUTPUT_BYTES")
    max_output_lines: int = Field(5000, alias="SUBAGENTS_MAX_OUTPUT_LINES")

    # Artifacts
    artifacts_enabled: bool = Field(True, alias="SUBAGENTS_ARTIFACTS_ENABLED")
    artifact_cleanup_days: int = Field(7, alias="SUBAGENTS_ARTIFACT_CLEANUP_DAYS")

    # Timing
    poll_interval: float = Field(1.0, alias="SUBAGENTS_POLL_INTERVAL")
    update_throttle: float = Field(0.15, alias="SUBAGENTS_UPDATE_THROTTLE")
    kill_grace_seconds: float = Field(3.0, alias="SUBAGENTS_KILL_GRACE_SECONDS")
    job_retention_seconds: float = Field(10.0, alias="SUBAGENTS_JOB_RETENTION_SECONDS")

    # Defaults for caller-facing flags
    async_by_default: bool = Field(False, alias="SUBAGENTS_ASYNC_BY_DEFAULT")
    share_by_default: bool = Field(False, alias="SUBAGENTS_SHARE_BY_DEFAULT")
    share_viewer_url: str = Field("", alias="SUBAGENTS_SHARE_VIEWER_URL")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "OrchestrationConfig":
        self.max_parallel = max(1, int(self.max_parallel))
        self.max_concurrency = max(1, min(self.max_parallel, int(self.max_concurrency)))
        self.max_output_bytes = max(1, int(self.max_output_bytes))
        self.max_output_lines = max(1, int(self.max_output_lines))
        self.artifact_cleanup_days = max(0, int(self.artifact_cleanup_days))
        # The throttle floor keeps progress callbacks from flooding renderers.
        self.update_throttle = max(0.15, float(self.update_throttle))
        self.poll_interval = max(0.05, float(self.poll_interval))
        self.kill_grace_seconds = max(0.0, float(self.kill_grace_seconds))
        self.job_retention_seconds = max(0.0, float(self.job_retention_seconds))
        if not self.placeholder:
            self.placeholder = "{previous}"
        self.results_dir = self.results_dir.expanduser().resolve()
        self.async_dir = self.async_dir.expanduser().resolve()
        self.artifacts_dir = self.artifacts_dir.expanduser().resolve()
        return self

    def agent_directories(self, cwd: Path | None = None) -> list[Path]:
        """Resolve agent directories; relative entries are taken from *cwd*."""
        base = Path(cwd) if cwd is not None else Path.cwd()
        dirs: list[Path] = []
        for entry in self.agents_dirs:
            path = Path(entry).expanduser()
            dirs.append(path if path.is_absolute() else (base / path).resolve())
        return dirs

    def __repr__(self) -> str:
        return (
            f"OrchestrationConfig(worker={self.worker_command!r}, "
            f"max_parallel={self.max_parallel}, "
            f"max_concurrency={self.max_concurrency})"
        )
