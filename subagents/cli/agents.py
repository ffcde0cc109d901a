"""Agent listing command."""

from __future__ import annotations

import json as json_mod
from pathlib import Path
from typing import Optional

import click

from subagents.cli.formatters import build_table, get_console
from subagents.config import OrchestrationConfig
from subagents.orchestration.agents import AgentRegistry


@click.command("agents")
@click.option("--cwd", type=click.Path(file_okay=False), help="Project directory to search")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
def agents_cmd(ctx: click.Context, cwd: Optional[str], json_output: bool) -> None:
    """List discovered agent definitions."""
    config = OrchestrationConfig()
    registry = AgentRegistry.from_directories(
        config.agent_directories(Path(cwd) if cwd else None)
    )

    if json_output:
        click.echo(json_mod.dumps([a.model_dump() for a in registry.all()], indent=2))
        return

    console = get_console(no_color=(ctx.obj or {}).get("no_color", False))
    if not len(registry):
        console.print("No agents found. Searched:")
        for directory in config.agent_directories(Path(cwd) if cwd else None):
            console.print(f"  {directory}")
        return
    rows = [
        [a.name, a.model or "-", ", ".join(a.tools) or "-", a.description]
        for a in registry.all()
    ]
    console.print(build_table("Agents", ["Name", "Model", "Tools", "Description"], rows))
