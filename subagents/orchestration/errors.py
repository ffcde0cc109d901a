"""Exceptions raised to callers of the orchestrator.

Worker failures are not exceptions; they come back as failed TaskResults.
"""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for orchestration errors."""


class InvalidRequestError(OrchestrationError, ValueError):
    """The request was rejected before any worker was spawned."""


class RunNotFoundError(OrchestrationError, LookupError):
    """No run matches the given id, prefix or directory."""


class LaunchError(OrchestrationError):
    """The background runner process could not be started."""
