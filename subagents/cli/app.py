"""CLI application — Click-based command hierarchy for subagents.

The main CLI group and global flags. Subcommand modules register
themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any

import click

from subagents import __version__


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.option("--verbose", "-v", is_flag=True, help="Log orchestration events to stderr")
@click.version_option(__version__, prog_name="subagents")
@click.pass_context
def cli(ctx: click.Context, no_color: bool, verbose: bool) -> None:
    """Delegate tasks to worker agents: single, parallel or chained."""
    ctx.ensure_object(dict)
    ctx.obj["no_color"] = no_color
    ctx.obj["verbose"] = verbose
    if verbose:
        import logging

        from subagents.main import configure_logging

        configure_logging(level=logging.INFO, force=True)


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommands."""
    from subagents.cli.run_cmd import run_cmd
    from subagents.cli.monitoring import cleanup_cmd, jobs_cmd, status_cmd
    from subagents.cli.agents import agents_cmd

    cli.add_command(run_cmd)
    cli.add_command(status_cmd)
    cli.add_command(jobs_cmd)
    cli.add_command(agents_cmd)
    cli.add_command(cleanup_cmd)


_register_subcommands()
