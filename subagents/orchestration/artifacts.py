"""
Artifact Store — Per-Task Input, Output, Event Log and Metadata Files.

Every task run can leave four files behind in a run-scoped directory:

    <run>_<agent>[_<index>]_input.md     the task as sent to the worker
    <run>_<agent>[_<index>]_output.md    the worker's final text output
    <run>_<agent>[_<index>].jsonl        raw event stream capture
    <run>_<agent>[_<index>]_meta.json    agent, task, exit code, timing, errors

Files are created lazily on first write. Write failures are logged and
swallowed: losing an artifact must never fail an otherwise good run.
Old files are pruned by age, at most once a day per directory.
"""

from __future__ import annotations

import json
import re
import time
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog

from subagents.orchestration.models import ArtifactConfig, ArtifactPaths

logger = structlog.get_logger(__name__)

CLEANUP_MARKER_FILE = ".last-cleanup"
_CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60
_UNSAFE_NAME_RE = re.compile(r"[^\w.-]")


def safe_name(name: str) -> str:
    """Make an agent label usable as a filename fragment."""
    return _UNSAFE_NAME_RE.sub("_", name)


def artifacts_dir_for_session(session_file: Optional[str], fallback: Path) -> Path:
    """Keep artifacts next to the session transcript when there is one."""
    if session_file:
        return Path(session_file).parent / "subagent-artifacts"
    return fallback


class ArtifactStore:
    """Reads and writes per-task artifacts under one directory."""

    def __init__(self, directory: Path, config: Optional[ArtifactConfig] = None) -> None:
        self._directory = Path(directory)
        self._config = config or ArtifactConfig()

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def paths_for(self, run_id: str, agent: str, index: Optional[int] = None) -> ArtifactPaths:
        suffix = f"_{index}" if index is not None else ""
        base = f"{run_id}_{safe_name(agent)}{suffix}"
        return ArtifactPaths(
            input_path=str(self._directory / f"{base}_input.md"),
            output_path=str(self._directory / f"{base}_output.md"),
            jsonl_path=str(self._directory / f"{base}.jsonl"),
            metadata_path=str(self._directory / f"{base}_meta.json"),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_input(self, paths: ArtifactPaths, agent: str, task: str) -> None:
        if self._config.include_input:
            self._write_text(paths.input_path, f"# Task for {agent}\n\n{task}")

    def write_output(self, paths: ArtifactPaths, output: str) -> None:
        if self._config.include_output:
            self._write_text(paths.output_path, output)

    def write_events(self, paths: ArtifactPaths, lines: Iterable[str]) -> None:
        if not self._config.include_jsonl:
            return
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            with open(paths.jsonl_path, "a", encoding="utf-8") as f:
                for line in lines:
                    f.write(line.rstrip("\n") + "\n")
        except OSError as exc:
            logger.warning("artifacts.write_failed", path=paths.jsonl_path, error=str(exc))

    def write_metadata(self, paths: ArtifactPaths, metadata: dict[str, Any]) -> None:
        if self._config.include_metadata:
            payload = {**metadata, "timestamp": metadata.get("timestamp", time.time())}
            self._write_text(paths.metadata_path, json.dumps(payload, indent=2, default=str))

    def _write_text(self, path: str, content: str) -> None:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            Path(path).write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.warning("artifacts.write_failed", path=path, error=str(exc))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def read_output(paths: ArtifactPaths) -> Optional[str]:
        try:
            return Path(paths.output_path).read_text(encoding="utf-8")
        except OSError:
            return None

    @staticmethod
    def read_metadata(paths: ArtifactPaths) -> Optional[dict[str, Any]]:
        try:
            return json.loads(Path(paths.metadata_path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup(self, max_age_days: Optional[int] = None, force: bool = False) -> int:
        """Delete artifacts older than the retention window. Returns files removed."""
        days = self._config.cleanup_days if max_age_days is None else max_age_days
        return cleanup_old_artifacts(self._directory, days, force=force)


def cleanup_old_artifacts(directory: Path, max_age_days: int, force: bool = False) -> int:
    """Prune files older than *max_age_days* from *directory*.

    A marker file limits the sweep to once every 24 hours unless *force*.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return 0

    now = time.time()
    marker = directory / CLEANUP_MARKER_FILE
    if not force and marker.exists():
        try:
            if now - marker.stat().st_mtime < _CLEANUP_INTERVAL_SECONDS:
                return 0
        except OSError:
            pass

    cutoff = now - max_age_days * 24 * 60 * 60
    removed = 0
    for entry in directory.iterdir():
        if entry.name == CLEANUP_MARKER_FILE or not entry.is_file():
            continue
        try:
            if entry.stat().st_mtime < cutoff:
                entry.unlink()
                removed += 1
        except OSError:
            logger.debug("artifacts.cleanup_skip", path=str(entry))

    try:
        marker.write_text(str(now), encoding="utf-8")
    except OSError as exc:
        logger.warning("artifacts.marker_write_failed", path=str(marker), error=str(exc))

    if removed:
        logger.info("artifacts.cleaned", directory=str(directory), removed=removed)
    return removed
