"""The ``run`` command — delegate one task, a parallel batch, or a chain."""

from __future__ import annotations

import json as json_mod
from typing import Any, Optional

import click
from rich.live import Live

from subagents.cli.app import async_cmd
from subagents.cli.formatters import get_console, progress_table
from subagents.config import OrchestrationConfig
from subagents.orchestration.errors import OrchestrationError
from subagents.orchestration.models import MaxOutputConfig, OrchestrationResult, Progress, TaskSpec
from subagents.orchestration.orchestrator import OrchestrationRequest, Orchestrator


def parse_pair(value: str) -> TaskSpec:
    """``agent=task text`` -> TaskSpec. A chain step may leave the task empty."""
    agent, sep, task = value.partition("=")
    if not sep or not agent.strip():
        raise click.BadParameter(f"expected AGENT=TASK, got {value!r}")
    return TaskSpec(agent=agent.strip(), task=task.strip())


def result_payload(result: OrchestrationResult) -> dict[str, Any]:
    payload = result.model_dump(mode="json", exclude={"results"})
    payload["results"] = [
        {
            "agent": r.agent,
            "task": r.task,
            "exit_code": r.exit_code,
            "error": r.error,
            "output": r.output,
            "model": r.model,
            "usage": r.usage.model_dump(),
            "artifact_paths": r.artifact_paths.model_dump() if r.artifact_paths else None,
            "truncated": bool(r.truncation and r.truncation.truncated),
            "session_file": r.session_file,
            "share_url": r.share_url,
            "share_error": r.share_error,
        }
        for r in result.results
    ]
    return payload


@click.command("run")
@click.option("--agent", "-a", help="Agent for a single task")
@click.option("--task", "-t", help="Task text for a single task")
@click.option("--model", help="Model override (single mode)")
@click.option("--parallel", "parallel", multiple=True, metavar="AGENT=TASK", help="Parallel task (repeatable)")
@click.option("--chain", "chain", multiple=True, metavar="AGENT=TASK", help="Chain step (repeatable)")
@click.option("--cwd", type=click.Path(file_okay=False), help="Working directory for workers")
@click.option("--concurrency", "-c", type=int, help="Max parallel tasks in flight")
@click.option("--async/--sync", "run_async", default=None, help="Run detached in the background")
@click.option("--share/--no-share", default=None, help="Export and publish the session transcript")
@click.option("--session-dir", type=click.Path(file_okay=False), help="Persist worker sessions here")
@click.option("--max-bytes", type=int, help="Output byte budget")
@click.option("--max-lines", type=int, help="Output line budget")
@click.option("--no-artifacts", is_flag=True, help="Do not write per-task artifacts")
@click.option("--session-id", envvar="SUBAGENTS_SESSION_ID", help="Tag result files with this session")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def run_cmd(
    ctx: click.Context,
    agent: Optional[str],
    task: Optional[str],
    model: Optional[str],
    parallel: tuple[str, ...],
    chain: tuple[str, ...],
    cwd: Optional[str],
    concurrency: Optional[int],
    run_async: Optional[bool],
    share: Optional[bool],
    session_dir: Optional[str],
    max_bytes: Optional[int],
    max_lines: Optional[int],
    no_artifacts: bool,
    session_id: Optional[str],
    json_output: bool,
) -> None:
    """Delegate work to worker agents."""
    obj = ctx.obj or {}
    console = get_console(no_color=obj.get("no_color", False))
    err_console = get_console(no_color=obj.get("no_color", False), stderr=True)

    try:
        config = OrchestrationConfig()
    except Exception as exc:
        err_console.print(f"[red]Invalid configuration:[/red] {exc}")
        ctx.exit(2)

    max_output = None
    if max_bytes is not None or max_lines is not None:
        max_output = MaxOutputConfig(
            max_bytes=max_bytes or config.max_output_bytes,
            max_lines=max_lines or config.max_output_lines,
        )

    try:
        request = OrchestrationRequest(
            agent=agent,
            task=task,
            model=model,
            tasks=[parse_pair(p) for p in parallel] or None,
            chain=[parse_pair(c) for c in chain] or None,
            cwd=cwd,
            concurrency=concurrency,
            run_async=run_async,
            share=share,
            session_dir=session_dir,
            max_output=max_output,
            artifacts=not no_artifacts,
        )
    except click.BadParameter as exc:
        err_console.print(f"[red]{exc.format_message()}[/red]")
        ctx.exit(2)

    orchestrator = Orchestrator(config, session_id=session_id)
    board: dict[int, Progress] = {}

    try:
        if json_output or run_async:
            result = await orchestrator.run(request)
        else:
            with Live(console=console, refresh_per_second=8, transient=True) as live:

                def on_progress(snapshots: list[Progress]) -> None:
                    for snap in snapshots:
                        board[snap.index] = snap
                    live.update(progress_table([board[i] for i in sorted(board)]))

                result = await orchestrator.run(request, on_progress=on_progress)
    except OrchestrationError as exc:
        err_console.print(f"[red]{exc}[/red]")
        ctx.exit(2)

    if json_output:
        click.echo(json_mod.dumps(result_payload(result), indent=2))
    else:
        _print_result(console, result)

    if result.is_error:
        ctx.exit(1)


def _print_result(console: Any, result: OrchestrationResult) -> None:
    if result.async_id:
        console.print(f"[bold]Async run[/bold] {result.async_id}")
        console.print(f"  Directory: {result.async_dir}")
        console.print(f"  Check with: subagents status {result.async_id}")
        return

    for note in result.notes:
        console.print(f"[yellow]Note:[/yellow] {note}")
    if result.progress is None and result.results:
        console.print(progress_table([r.progress for r in result.results if r.progress]))
    style = "red" if result.is_error else ""
    console.print(result.text, style=style, markup=False, highlight=False)
    if result.artifacts_dir:
        console.print(f"[dim]Artifacts: {result.artifacts_dir}[/dim]")
