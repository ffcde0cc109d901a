"""
Durable Run State — Status File, Event Log, Run Log and Result File.

The foreground orchestrator and a detached background run never share
memory; they talk only through files. Per run directory:

    status.json          current RunStatus, replaced atomically on every update
    events.jsonl         append-only lifecycle records, one JSON object per line
    run-log-<id>.md      human-readable summary written at completion
    output.log           raw worker stdout/stderr tee, for tailing
    runner.log           the background process's own structured log

On completion a result-correlation file ``<results_dir>/<id>.json`` is
written, tagged with the launching session so that other sessions watching
the same directory can tell it is not theirs.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from subagents.orchestration.models import RunResultFile, RunStatus

logger = structlog.get_logger(__name__)

STATUS_FILE = "status.json"
EVENTS_FILE = "events.jsonl"
OUTPUT_FILE = "output.log"
RUNNER_LOG_FILE = "runner.log"

RUN_STARTED = "subagent.run.started"
STEP_STARTED = "subagent.step.started"
STEP_COMPLETED = "subagent.step.completed"
STEP_FAILED = "subagent.step.failed"
RUN_COMPLETED = "subagent.run.completed"


def run_log_name(run_id: str) -> str:
    return f"run-log-{run_id}.md"


def format_duration_ms(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    return f"{ms // 60_000}m{(ms % 60_000) // 1000}s"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def atomic_write_text(target: Path, content: str) -> None:
    """Write to a temp file in the same directory, then rename over *target*."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix=".tmp")
    try:
        with open(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, target)
    except Exception:
        Path(tmp_path).unlink(missing_ok=True)
        raise


class RunStatusStore:
    """Writer for one run directory. Only the background run owns one."""

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = Path(run_dir)

    @property
    def status_path(self) -> Path:
        return self.run_dir / STATUS_FILE

    @property
    def events_path(self) -> Path:
        return self.run_dir / EVENTS_FILE

    @property
    def output_path(self) -> Path:
        return self.run_dir / OUTPUT_FILE

    def log_path(self, run_id: str) -> Path:
        return self.run_dir / run_log_name(run_id)

    def write(self, status: RunStatus) -> None:
        status.last_update = time.time()
        atomic_write_text(self.status_path, status.model_dump_json(indent=2))

    def append_event(self, event_type: str, run_id: str, **fields: Any) -> None:
        record = {"type": event_type, "ts": time.time(), "run_id": run_id, **fields}
        self.run_dir.mkdir(parents=True, exist_ok=True)
        with open(self.events_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

    def read_events(self) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        try:
            with open(self.events_path, encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        try:
                            events.append(json.loads(line))
                        except json.JSONDecodeError:
                            continue
        except OSError:
            return []
        return events

    def write_run_log(self, status: RunStatus, summary: str, truncated: bool = False) -> Path:
        ended_at = status.ended_at or time.time()
        lines = [
            f"# Subagent run {status.run_id}",
            "",
            f"- **Mode:** {status.mode}",
            f"- **CWD:** {status.cwd or ''}",
            f"- **Started:** {_iso(status.started_at)}",
            f"- **Ended:** {_iso(ended_at)}",
            f"- **Duration:** {format_duration_ms(int((ended_at - status.started_at) * 1000))}",
        ]
        if status.session_file:
            lines.append(f"- **Session:** {status.session_file}")
        if status.share_url:
            lines.append(f"- **Share:** {status.share_url}")
        if status.share_error:
            lines.append(f"- **Share error:** {status.share_error}")
        if status.artifacts_dir:
            lines.append(f"- **Artifacts:** {status.artifacts_dir}")
        lines += ["", "## Steps", "| Step | Agent | Status | Duration |", "| --- | --- | --- | --- |"]
        for i, step in enumerate(status.steps, start=1):
            duration = format_duration_ms(step.duration_ms) if step.duration_ms is not None else "-"
            lines.append(f"| {i} | {step.agent} | {step.status} | {duration} |")
        lines += ["", "## Summary"]
        if truncated:
            lines += ["_Output truncated_", ""]
        lines += [summary.strip() or "(no output)", ""]

        path = self.log_path(status.run_id)
        path.write_text("\n".join(lines), encoding="utf-8")
        return path


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


def read_status(run_dir: Path) -> Optional[RunStatus]:
    """Load ``status.json`` from *run_dir*, or None if absent or unreadable."""
    path = Path(run_dir) / STATUS_FILE
    try:
        return RunStatus.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValidationError, ValueError) as exc:
        logger.debug("status.unreadable", path=str(path), error=str(exc))
        return None


class StatusCache:
    """Re-parses a run's status file only when it has been replaced.

    Every write is an atomic rename, so a new inode signals a new version
    even when two writes land within one mtime tick.
    """

    def __init__(self) -> None:
        self._entries: dict[Path, tuple[tuple[int, int, int], RunStatus]] = {}

    def get(self, run_dir: Path) -> Optional[RunStatus]:
        path = Path(run_dir) / STATUS_FILE
        try:
            st = path.stat()
        except OSError:
            self._entries.pop(path, None)
            return None
        version = (st.st_mtime_ns, st.st_ino, st.st_size)
        cached = self._entries.get(path)
        if cached is not None and cached[0] == version:
            return cached[1]
        status = read_status(run_dir)
        if status is not None:
            self._entries[path] = (version, status)
        return status

    def forget(self, run_dir: Path) -> None:
        self._entries.pop(Path(run_dir) / STATUS_FILE, None)

    def clear(self) -> None:
        self._entries.clear()


def find_by_prefix(root: Path, prefix: str, suffix: str = "") -> list[Path]:
    """Entries of *root* whose name (minus *suffix*) starts with *prefix*."""
    root = Path(root)
    if not root.is_dir():
        return []
    exact = root / f"{prefix}{suffix}"
    if exact.exists():
        return [exact]
    matches = []
    for entry in sorted(root.iterdir()):
        name = entry.name
        if suffix:
            if not name.endswith(suffix):
                continue
            name = name[: -len(suffix)]
        if name.startswith(prefix):
            matches.append(entry)
    return matches


def output_tail(path: Optional[str | Path], lines: int = 20) -> list[str]:
    """Last *lines* non-empty lines of a run's output log."""
    if not path:
        return []
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            tail = deque((line.rstrip("\n") for line in f if line.strip()), maxlen=lines)
    except OSError:
        return []
    return list(tail)


# ---------------------------------------------------------------------------
# Result-correlation files
# ---------------------------------------------------------------------------


def result_path_for(results_dir: Path, run_id: str) -> Path:
    return Path(results_dir) / f"{run_id}.json"


def write_result_file(path: Path, result: RunResultFile) -> bool:
    """Persist the result file. Failures are logged, never raised."""
    try:
        atomic_write_text(Path(path), result.model_dump_json(indent=2))
    except OSError as exc:
        logger.warning("status.result_write_failed", path=str(path), error=str(exc))
        return False
    return True


def read_result_file(path: Path) -> Optional[RunResultFile]:
    try:
        return RunResultFile.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValidationError, ValueError) as exc:
        logger.debug("status.result_unreadable", path=str(path), error=str(exc))
        return None


def belongs_to(result: RunResultFile, session_id: Optional[str], cwd: Optional[str]) -> bool:
    """Whether a result file was produced by the listening session.

    Tagged files match on session id only. Untagged files fall back to the
    working directory, which cannot tell apart two sessions in one directory.
    """
    if result.session_id:
        return session_id is not None and result.session_id == session_id
    if cwd is None or result.cwd is None:
        return False
    return os.path.realpath(result.cwd) == os.path.realpath(cwd)
