"""Monitoring commands — status, jobs, cleanup."""

from __future__ import annotations

import json as json_mod
from typing import Optional

import click

from subagents.cli.formatters import (
    format_duration,
    format_tokens,
    get_console,
    jobs_table,
    run_status_table,
    status_indicator,
)
from subagents.config import OrchestrationConfig
from subagents.orchestration.errors import OrchestrationError
from subagents.orchestration.orchestrator import Orchestrator
from subagents.orchestration.status import output_tail
from subagents.orchestration.supervisor import list_runs


@click.command("status")
@click.argument("run_id", required=False)
@click.option("--dir", "run_dir", type=click.Path(file_okay=False), help="Run directory")
@click.option("--tail", type=int, default=0, help="Show the last N lines of worker output")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
def status_cmd(
    ctx: click.Context,
    run_id: Optional[str],
    run_dir: Optional[str],
    tail: int,
    json_output: bool,
) -> None:
    """Show the state of a background run by id, id prefix or directory."""
    obj = ctx.obj or {}
    console = get_console(no_color=obj.get("no_color", False))
    orchestrator = Orchestrator(OrchestrationConfig())
    try:
        lookup = orchestrator.status(run_id=run_id, run_dir=run_dir)
    except OrchestrationError as exc:
        get_console(stderr=True).print(f"[red]{exc}[/red]")
        ctx.exit(2)

    if json_output:
        click.echo(
            json_mod.dumps(
                {
                    "run_id": lookup.run_id,
                    "run_dir": str(lookup.run_dir) if lookup.run_dir else None,
                    "state": lookup.state,
                    "status": lookup.status.model_dump(mode="json") if lookup.status else None,
                    "result": lookup.result.model_dump(mode="json") if lookup.result else None,
                },
                indent=2,
            )
        )
        return

    status = lookup.status
    console.print(status_indicator(lookup.state), end="")
    console.print(f"[bold]{lookup.run_id}[/bold] {lookup.state}")
    if lookup.run_dir:
        console.print(f"  Directory: {lookup.run_dir}")
    if status is not None:
        end = status.ended_at or status.last_update
        console.print(f"  Elapsed: {format_duration(max(0.0, end - status.started_at))}")
        console.print(f"  Tokens: {format_tokens(status.total_tokens)}")
        if status.error:
            console.print(f"  [red]Error:[/red] {status.error}")
        if status.share_url:
            console.print(f"  Share: {status.share_url}")
        elif status.share_error:
            console.print(f"  [yellow]Share error:[/yellow] {status.share_error}")
        console.print(run_status_table(status))
        if tail > 0:
            for line in output_tail(status.output_file, tail):
                console.print(line, markup=False, highlight=False)
    if lookup.result is not None:
        console.print()
        console.print(lookup.result.summary or "(no output)", markup=False, highlight=False)


@click.command("jobs")
@click.option("--all", "show_all", is_flag=True, help="Include finished runs")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
def jobs_cmd(ctx: click.Context, show_all: bool, json_output: bool) -> None:
    """List background runs."""
    obj = ctx.obj or {}
    config = OrchestrationConfig()
    jobs = list_runs(config.async_dir)
    if not show_all:
        jobs = [job for job in jobs if not job.is_terminal]

    if json_output:
        click.echo(json_mod.dumps([job.model_dump(mode="json") for job in jobs], indent=2))
        return

    console = get_console(no_color=obj.get("no_color", False))
    if not jobs:
        console.print("No background runs." if show_all else "No active background runs.")
        return
    console.print(jobs_table(jobs))


@click.command("cleanup")
@click.option("--days", type=int, default=None, help="Delete artifacts older than N days")
@click.pass_context
def cleanup_cmd(ctx: click.Context, days: Optional[int]) -> None:
    """Prune old per-task artifacts."""
    config = OrchestrationConfig()
    removed = Orchestrator(config).cleanup_artifacts(days)
    click.echo(f"Removed {removed} artifact file(s) from {config.artifacts_dir}")
