"""Command-line interface for subagents."""
