"""Tests for subagents.orchestration.artifacts — per-task artifact files."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path

from subagents.orchestration.artifacts import (
    CLEANUP_MARKER_FILE,
    ArtifactStore,
    artifacts_dir_for_session,
    cleanup_old_artifacts,
    safe_name,
)
from subagents.orchestration.models import ArtifactConfig


def test_paths_use_run_agent_and_index(tmp_path):
    store = ArtifactStore(tmp_path)
    paths = store.paths_for("run1", "scout", 2)
    assert paths.input_path == str(tmp_path / "run1_scout_2_input.md")
    assert paths.output_path == str(tmp_path / "run1_scout_2_output.md")
    assert paths.jsonl_path == str(tmp_path / "run1_scout_2.jsonl")
    assert paths.metadata_path == str(tmp_path / "run1_scout_2_meta.json")

    single = store.paths_for("run1", "scout")
    assert single.output_path == str(tmp_path / "run1_scout_output.md")


def test_safe_name_replaces_separators():
    assert safe_name("team/scout v2") == "team_scout_v2"


def test_directory_created_lazily(tmp_path):
    directory = tmp_path / "artifacts"
    store = ArtifactStore(directory)
    paths = store.paths_for("r", "scout")
    assert not directory.exists()

    store.write_input(paths, "scout", "find the bug")
    store.write_output(paths, "found it")
    store.write_events(paths, ['{"type":"message_end"}', '{"type":"tool_execution_start"}\n'])
    store.write_metadata(paths, {"exit_code": 0})

    assert Path(paths.input_path).read_text() == "# Task for scout\n\nfind the bug"
    assert ArtifactStore.read_output(paths) == "found it"
    assert len(Path(paths.jsonl_path).read_text().splitlines()) == 2
    meta = ArtifactStore.read_metadata(paths)
    assert meta["exit_code"] == 0
    assert "timestamp" in meta


def test_include_flags_skip_files(tmp_path):
    store = ArtifactStore(
        tmp_path, ArtifactConfig(include_input=False, include_jsonl=False, include_metadata=False)
    )
    paths = store.paths_for("r", "scout")
    store.write_input(paths, "scout", "task")
    store.write_events(paths, ["{}"])
    store.write_metadata(paths, {})
    store.write_output(paths, "out")
    assert sorted(os.listdir(tmp_path)) == ["r_scout_output.md"]


def test_write_failure_is_swallowed(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    store = ArtifactStore(blocker / "sub")
    paths = store.paths_for("r", "scout")
    store.write_output(paths, "out")  # must not raise
    assert ArtifactStore.read_output(paths) is None


def test_cleanup_removes_old_files_and_respects_marker(tmp_path):
    old = tmp_path / "old_output.md"
    new = tmp_path / "new_output.md"
    old.write_text("old")
    new.write_text("new")
    past = time.time() - 10 * 24 * 60 * 60
    os.utime(old, (past, past))

    assert cleanup_old_artifacts(tmp_path, 7) == 1
    assert not old.exists()
    assert new.exists()
    assert (tmp_path / CLEANUP_MARKER_FILE).exists()

    # A fresh marker skips the next sweep unless forced.
    os.utime(new, (past, past))
    assert cleanup_old_artifacts(tmp_path, 7) == 0
    assert cleanup_old_artifacts(tmp_path, 7, force=True) == 1


def test_cleanup_missing_directory(tmp_path):
    assert cleanup_old_artifacts(tmp_path / "nope", 7) == 0


def test_artifacts_dir_for_session(tmp_path):
    session = tmp_path / "sessions" / "s.jsonl"
    assert artifacts_dir_for_session(str(session), tmp_path) == tmp_path / "sessions" / "subagent-artifacts"
    assert artifacts_dir_for_session(None, tmp_path) == tmp_path


def test_metadata_is_json(tmp_path):
    store = ArtifactStore(tmp_path)
    paths = store.paths_for("r", "scout")
    store.write_metadata(paths, {"when": Path("/x")})
    assert json.loads(Path(paths.metadata_path).read_text())["when"] == "/x"
