"""
Subagents — Entry Point.

    subagents run --agent scout --task "map the auth module"

Logging is configured here once per process. The foreground CLI renders to
the terminal; the detached background runner has no terminal and sends its
log to a file inside its run directory instead.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

_logging_configured = False


def configure_logging(
    log_file: Optional[Path] = None,
    level: int = logging.WARNING,
    force: bool = False,
) -> None:
    """Configure structlog on top of standard-library logging.

    Safe to call more than once; later calls are no-ops unless *force*.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured and not force:
        return
    _logging_configured = True

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.root.handlers = [handler]
    logging.root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=log_file is None),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def main() -> None:
    """Console-script entry point."""
    configure_logging()
    from subagents.cli.app import cli

    cli()


if __name__ == "__main__":
    main()
