"""
Output truncation by byte and line budgets.

Worker output can be arbitrarily large; callers get a bounded view with a
one-line marker in front saying how much was kept and where the full text
lives. The cut never lands inside a multi-byte character: candidate prefixes
are measured by their encoded length rather than by indexing into bytes.
"""

from __future__ import annotations

from typing import Optional

from subagents.orchestration.models import MaxOutputConfig, TruncationResult


def format_bytes(size: int) -> str:
    """Format a byte count in human-readable form."""
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"


def _utf8_len(text: str) -> int:
    return len(text.encode("utf-8", errors="surrogatepass"))


def _fit_prefix(text: str, max_bytes: int) -> str:
    """Longest prefix of *text* whose UTF-8 encoding fits in *max_bytes*."""
    low, high = 0, len(text)
    while low < high:
        mid = (low + high + 1) // 2
        if _utf8_len(text[:mid]) <= max_bytes:
            low = mid
        else:
            high = mid - 1
    return text[:low]


def truncate_output(
    output: str,
    budget: MaxOutputConfig,
    artifact_path: Optional[str] = None,
) -> TruncationResult:
    """Bound *output* to ``budget.max_lines`` lines and ``budget.max_bytes`` bytes.

    Text already within both budgets comes back unchanged with
    ``truncated=False``, which makes the function idempotent on its own
    in-budget output.
    """
    lines = output.split("\n")
    total_bytes = _utf8_len(output)

    if total_bytes <= budget.max_bytes and len(lines) <= budget.max_lines:
        return TruncationResult(text=output, truncated=False)

    kept = output
    if len(lines) > budget.max_lines:
        kept = "\n".join(lines[: budget.max_lines])

    if _utf8_len(kept) > budget.max_bytes:
        kept = _fit_prefix(kept, budget.max_bytes)

    kept_lines = len(kept.split("\n"))
    location = f" - full output at {artifact_path}" if artifact_path else ""
    marker = (
        f"[TRUNCATED: showing first {kept_lines} of {len(lines)} lines, "
        f"{format_bytes(_utf8_len(kept))} of {format_bytes(total_bytes)}{location}]\n"
    )

    return TruncationResult(
        text=marker + kept,
        truncated=True,
        original_bytes=total_bytes,
        original_lines=len(lines),
        artifact_path=artifact_path,
    )
