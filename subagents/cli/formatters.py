"""CLI formatters — state indicators, durations, progress and run tables."""

from __future__ import annotations

from typing import Any, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from subagents.orchestration.models import AsyncJob, Progress, RunStatus, TokenUsage


def get_console(no_color: bool = False, stderr: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color, stderr=stderr)


def status_indicator(status: str) -> Text:
    """Map a run, step or task state to a colored indicator."""
    mapping = {
        "running": Text("> ", style="cyan"),
        "queued": Text(". ", style="dim"),
        "pending": Text(". ", style="dim"),
        "complete": Text("+ ", style="green"),
        "completed": Text("+ ", style="green"),
        "failed": Text("x ", style="red"),
    }
    return mapping.get(status, Text("? ", style="dim"))


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m{s:02d}s"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    return f"{h}h {m:02d}m"


def format_tokens(tokens: Optional[TokenUsage]) -> str:
    if tokens is None:
        return "-"
    return f"{tokens.total:,} ({tokens.input:,} in / {tokens.output:,} out)"


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table


def progress_table(progress: list[Progress]) -> Table:
    """Live view of in-flight tasks."""
    table = Table(show_header=True, header_style="bold", expand=True)
    table.add_column("#", width=3)
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Tools", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Activity", ratio=1, overflow="ellipsis", no_wrap=True)
    for p in progress:
        if p.current_tool:
            activity = f"{p.current_tool} {p.current_tool_args or ''}".strip()
        elif p.error:
            activity = p.error
        else:
            activity = p.recent_output[-1] if p.recent_output else ""
        table.add_row(
            str(p.index + 1),
            p.agent,
            Text.assemble(status_indicator(p.status), p.status),
            str(p.tool_count),
            f"{p.tokens:,}",
            format_duration(p.duration_ms / 1000),
            activity,
        )
    return table


def run_status_table(status: RunStatus) -> Table:
    """Step table for one background run."""
    rows = []
    for i, step in enumerate(status.steps, start=1):
        duration = format_duration(step.duration_ms / 1000) if step.duration_ms is not None else "-"
        rows.append(
            [
                i,
                step.agent,
                Text.assemble(status_indicator(step.status), step.status),
                duration,
                format_tokens(step.tokens),
            ]
        )
    return build_table(
        f"Run {status.run_id} ({status.mode})",
        ["Step", "Agent", "Status", "Duration", "Tokens"],
        rows,
    )


def jobs_table(jobs: list[AsyncJob]) -> Table:
    rows = []
    for job in jobs:
        step = (
            f"{(job.current_step or 0) + 1}/{job.steps_total}" if job.steps_total else "-"
        )
        rows.append(
            [
                job.async_id,
                Text.assemble(status_indicator(job.status), job.status),
                job.mode,
                " -> ".join(job.agents) or "-",
                step,
                format_tokens(job.total_tokens),
            ]
        )
    return build_table("Background runs", ["Id", "Status", "Mode", "Agents", "Step", "Tokens"], rows)
