"""
Subagents — Delegated Task Orchestration for Worker Agents.

This package launches independent worker-agent processes, coordinates them
under one of three topologies and reports their progress back to a caller:

    1. single    — one task, one worker
    2. parallel  — bounded-concurrency fan-out, results in input order
    3. chain     — sequential steps, each fed the previous step's output

Runs execute in the foreground (streaming live progress) or detached in the
background, where a durable status file on disk is the only link between the
launching session and the run.
"""

__version__ = "0.1.0"
