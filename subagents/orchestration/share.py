"""
Session Export and Sharing — Best-Effort Publication of Worker Transcripts.

When a run persists its worker session, the transcript (a JSONL file) can be
rendered to a static HTML page and published as a GitHub gist. Every step
here is optional: a missing transcript, a rendering problem, or a GitHub CLI
that is absent or logged out all end up as a ``share_error`` string. Nothing
in this module raises to its caller.
"""

from __future__ import annotations

import asyncio
import io
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from subagents.orchestration.models import TokenUsage
from subagents.orchestration.stream import extract_text_from_content

logger = structlog.get_logger(__name__)

_GH_TIMEOUT_SECONDS = 60.0
_ROLE_STYLES = {
    "user": "bold cyan",
    "assistant": "bold green",
    "toolResult": "bold yellow",
}


@dataclass
class ShareOutcome:
    session_file: Optional[str] = None
    share_url: Optional[str] = None
    gist_url: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Transcript discovery
# ---------------------------------------------------------------------------


def find_latest_session_file(session_dir: Optional[str | Path]) -> Optional[Path]:
    """Most recently modified ``*.jsonl`` transcript in *session_dir*."""
    if not session_dir:
        return None
    directory = Path(session_dir)
    if not directory.is_dir():
        return None
    candidates = []
    for path in directory.glob("*.jsonl"):
        try:
            candidates.append((path.stat().st_mtime, path))
        except OSError:
            continue
    if not candidates:
        return None
    candidates.sort(key=lambda item: item[0], reverse=True)
    return candidates[0][1]


def _iter_entries(session_file: Path):
    with open(session_file, encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                yield entry


def parse_session_tokens(session_dir: Optional[str | Path]) -> Optional[TokenUsage]:
    """Cumulative token usage across every transcript in *session_dir*.

    Workers may append to one transcript or write one per invocation;
    both layouts are counted.
    """
    if not session_dir or not Path(session_dir).is_dir():
        return None
    session_files = sorted(Path(session_dir).glob("*.jsonl"))
    if not session_files:
        return None
    total_in = 0
    total_out = 0
    for session_file in session_files:
        try:
            for entry in _iter_entries(session_file):
                usage = entry.get("usage")
                if usage is None and isinstance(entry.get("message"), dict):
                    usage = entry["message"].get("usage")
                if not isinstance(usage, dict):
                    continue
                total_in += int(usage.get("inputTokens", usage.get("input", 0)) or 0)
                total_out += int(usage.get("outputTokens", usage.get("output", 0)) or 0)
        except OSError as exc:
            logger.debug("share.session_tokens_unreadable", path=str(session_file), error=str(exc))
    return TokenUsage(input=total_in, output=total_out, total=total_in + total_out)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _entry_message(entry: dict[str, Any]) -> Optional[dict[str, Any]]:
    message = entry.get("message")
    if isinstance(message, dict):
        return message
    if "role" in entry:
        return entry
    return None


def export_session_html(session_file: Path, output_dir: Path) -> Path:
    """Render a JSONL transcript to a standalone HTML page."""
    console = Console(record=True, file=io.StringIO(), width=110, force_terminal=False)
    console.print(Text(f"Session {session_file.stem}", style="bold"))
    for entry in _iter_entries(session_file):
        message = _entry_message(entry)
        if message is None:
            continue
        role = str(message.get("role", "unknown"))
        text = extract_text_from_content(message.get("content"))
        if not text:
            continue
        title = role if role != "toolResult" else f"tool: {message.get('toolName', '?')}"
        console.print(
            Panel(
                Text(text),
                title=title,
                title_align="left",
                border_style=_ROLE_STYLES.get(role, "dim"),
            )
        )

    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / f"{session_file.stem}.html"
    output_path.write_text(console.export_html(inline_styles=True), encoding="utf-8")
    return output_path


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


async def _run_gh(*args: str) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        "gh",
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_GH_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode or 0, stdout.decode(errors="replace"), stderr.decode(errors="replace")


async def create_share_link(html_path: Path, viewer_url: str = "") -> ShareOutcome:
    """Publish *html_path* as a gist. Failures come back in ``error``."""
    try:
        code, _, _ = await _run_gh("auth", "status")
    except FileNotFoundError:
        return ShareOutcome(error="GitHub CLI (gh) is not installed.")
    except (OSError, asyncio.TimeoutError) as exc:
        return ShareOutcome(error=f"GitHub CLI unavailable: {exc}")
    if code != 0:
        return ShareOutcome(error="GitHub CLI is not logged in. Run 'gh auth login' first.")

    try:
        code, stdout, stderr = await _run_gh("gist", "create", str(html_path))
    except (OSError, asyncio.TimeoutError) as exc:
        return ShareOutcome(error=f"Failed to create gist: {exc}")
    if code != 0:
        return ShareOutcome(error=stderr.strip() or "Failed to create gist.")

    gist_url = stdout.strip()
    gist_id = gist_url.rstrip("/").rsplit("/", 1)[-1] if gist_url else ""
    if not gist_id:
        return ShareOutcome(error="Failed to parse gist ID.")
    share_url = f"{viewer_url}?{gist_id}" if viewer_url else gist_url
    return ShareOutcome(share_url=share_url, gist_url=gist_url)


async def share_session(session_dir: Optional[str | Path], viewer_url: str = "") -> ShareOutcome:
    """Find, render and publish the latest transcript in *session_dir*. Never raises."""
    session_file = find_latest_session_file(session_dir)
    if session_file is None:
        return ShareOutcome(error="Session file not found.")

    outcome = ShareOutcome(session_file=str(session_file))
    try:
        html_path = await asyncio.to_thread(
            export_session_html, session_file, session_file.parent
        )
        published = await create_share_link(html_path, viewer_url)
    except Exception as exc:
        logger.warning("share.failed", session_file=str(session_file), error=str(exc))
        outcome.error = str(exc) or type(exc).__name__
        return outcome

    outcome.share_url = published.share_url
    outcome.gist_url = published.gist_url
    outcome.error = published.error
    if outcome.error:
        logger.info("share.unavailable", session_file=str(session_file), error=outcome.error)
    else:
        logger.info("share.published", share_url=outcome.share_url)
    return outcome
