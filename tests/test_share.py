"""Tests for subagents.orchestration.share — transcript export and gist publishing."""

from __future__ import annotations

import json
import os
import time
from unittest.mock import AsyncMock, patch

import pytest

from subagents.orchestration import share
from subagents.orchestration.share import (
    create_share_link,
    export_session_html,
    find_latest_session_file,
    parse_session_tokens,
    share_session,
)


def _write_session(directory, name="s.jsonl", usages=((10, 5),)):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    lines = [json.dumps({"type": "message", "message": {"role": "user", "content": "do [it]"}})]
    for inp, out in usages:
        lines.append(
            json.dumps(
                {
                    "type": "message",
                    "message": {
                        "role": "assistant",
                        "content": [{"type": "text", "text": "done <b>"}],
                        "usage": {"input": inp, "output": out},
                    },
                }
            )
        )
    path.write_text("\n".join(lines) + "\nnot json\n")
    return path


def test_find_latest_session_file(tmp_path):
    older = _write_session(tmp_path, "a.jsonl")
    newer = _write_session(tmp_path, "b.jsonl")
    past = time.time() - 100
    os.utime(older, (past, past))
    assert find_latest_session_file(tmp_path) == newer
    assert find_latest_session_file(tmp_path / "missing") is None
    assert find_latest_session_file(None) is None


def test_parse_session_tokens(tmp_path):
    _write_session(tmp_path, usages=((10, 5), (20, 7)))
    tokens = parse_session_tokens(tmp_path)
    assert (tokens.input, tokens.output, tokens.total) == (30, 12, 42)
    assert parse_session_tokens(tmp_path / "none") is None


def test_parse_session_tokens_alternate_keys(tmp_path):
    (tmp_path / "s.jsonl").write_text(json.dumps({"usage": {"inputTokens": 4, "outputTokens": 1}}) + "\n")
    assert parse_session_tokens(tmp_path).total == 5


def test_export_session_html(tmp_path):
    session = _write_session(tmp_path)
    html_path = export_session_html(session, tmp_path / "out")
    html = html_path.read_text()
    assert html_path.name == "s.html"
    assert "<html" in html.lower()
    assert "do [it]" in html
    assert "done &lt;b&gt;" in html


@pytest.mark.asyncio
async def test_share_link_gh_missing(tmp_path):
    with patch.object(share, "_run_gh", AsyncMock(side_effect=FileNotFoundError("gh"))):
        outcome = await create_share_link(tmp_path / "x.html")
    assert outcome.error == "GitHub CLI (gh) is not installed."
    assert outcome.share_url is None


@pytest.mark.asyncio
async def test_share_link_not_logged_in(tmp_path):
    with patch.object(share, "_run_gh", AsyncMock(return_value=(1, "", "not logged in"))):
        outcome = await create_share_link(tmp_path / "x.html")
    assert outcome.error == "GitHub CLI is not logged in. Run 'gh auth login' first."


@pytest.mark.asyncio
async def test_share_link_success_with_viewer(tmp_path):
    gh = AsyncMock(side_effect=[(0, "", ""), (0, "https://gist.github.com/u/abc123\n", "")])
    with patch.object(share, "_run_gh", gh):
        outcome = await create_share_link(tmp_path / "x.html", viewer_url="https://viewer.test/")
    assert outcome.error is None
    assert outcome.gist_url == "https://gist.github.com/u/abc123"
    assert outcome.share_url == "https://viewer.test/?abc123"
    assert gh.await_args_list[1].args == ("gist", "create", str(tmp_path / "x.html"))


@pytest.mark.asyncio
async def test_share_link_without_viewer_uses_gist_url(tmp_path):
    gh = AsyncMock(side_effect=[(0, "", ""), (0, "https://gist.github.com/u/abc123", "")])
    with patch.object(share, "_run_gh", gh):
        outcome = await create_share_link(tmp_path / "x.html")
    assert outcome.share_url == "https://gist.github.com/u/abc123"


@pytest.mark.asyncio
async def test_share_link_gist_failure(tmp_path):
    gh = AsyncMock(side_effect=[(0, "", ""), (1, "", "HTTP 422\n")])
    with patch.object(share, "_run_gh", gh):
        outcome = await create_share_link(tmp_path / "x.html")
    assert outcome.error == "HTTP 422"


@pytest.mark.asyncio
async def test_share_link_unparseable_gist(tmp_path):
    gh = AsyncMock(side_effect=[(0, "", ""), (0, "   ", "")])
    with patch.object(share, "_run_gh", gh):
        outcome = await create_share_link(tmp_path / "x.html")
    assert outcome.error == "Failed to parse gist ID."


@pytest.mark.asyncio
async def test_share_session_without_transcript(tmp_path):
    outcome = await share_session(tmp_path)
    assert outcome.error == "Session file not found."
    assert outcome.session_file is None


@pytest.mark.asyncio
async def test_share_session_end_to_end(tmp_path):
    session = _write_session(tmp_path)
    gh = AsyncMock(side_effect=[(0, "", ""), (0, "https://gist.github.com/u/xyz", "")])
    with patch.object(share, "_run_gh", gh):
        outcome = await share_session(tmp_path)
    assert outcome.session_file == str(session)
    assert outcome.share_url == "https://gist.github.com/u/xyz"
    assert (tmp_path / "s.html").exists()


@pytest.mark.asyncio
async def test_share_session_never_raises(tmp_path):
    _write_session(tmp_path)
    with patch.object(share, "export_session_html", side_effect=RuntimeError("render broke")):
        outcome = await share_session(tmp_path)
    assert outcome.error == "render broke"
    assert outcome.share_url is None
