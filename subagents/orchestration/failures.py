"""
Embedded Failure Detection — Reading Between the Exit Codes.

A worker can exit 0 even though the work it was asked to do failed: a shell
command inside it returned non-zero, a file was missing, a connection was
refused. Those failures only show up in tool output. The classifier scans the
finished message list for such signatures and, when one matches, the runner
reclassifies the task as failed.

This is a heuristic with a known precision/recall tradeoff: a worker that
legitimately prints "permission denied" as part of unrelated output is
flagged too. Signatures are an ordered, extendable list so new patterns can
be added without touching the runner.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from subagents.orchestration.stream import TOOL_RESULT_ROLE, extract_text_from_content

_EXIT_CODE_RE = re.compile(r"exit(?:ed)?\s*(?:with\s*)?(?:code|status)?\s*[:\s]?\s*(\d+)", re.I)
_DETAILS_LIMIT = 200


@dataclass(frozen=True)
class FailureSignature:
    """A named pattern that marks shell output as a failure."""

    name: str
    pattern: re.Pattern[str]

    @classmethod
    def of(cls, name: str, regex: str) -> "FailureSignature":
        return cls(name=name, pattern=re.compile(regex, re.I))

    def matches(self, output: str) -> bool:
        return self.pattern.search(output) is not None


DEFAULT_SIGNATURES: tuple[FailureSignature, ...] = (
    FailureSignature.of("command_not_found", r"command not found"),
    FailureSignature.of("permission_denied", r"permission denied"),
    FailureSignature.of("missing_file", r"no such file or directory"),
    FailureSignature.of("segfault", r"segmentation fault"),
    FailureSignature.of("killed", r"killed|terminated"),
    FailureSignature.of("out_of_memory", r"out of memory"),
    FailureSignature.of("connection_refused", r"connection refused"),
    FailureSignature.of("timeout", r"timeout"),
)


@dataclass(frozen=True)
class EmbeddedFailure:
    """A failure found inside otherwise successful worker output."""

    exit_code: int
    error_type: str
    details: Optional[str] = None

    def describe(self) -> str:
        if self.details:
            return f"{self.error_type} failed (exit {self.exit_code}): {self.details}"
        return f"{self.error_type} failed with exit code {self.exit_code}"


def _tool_result_text(message: dict[str, Any]) -> str:
    return extract_text_from_content(message.get("content"))


def _tool_name(message: dict[str, Any]) -> str:
    return str(message.get("toolName") or message.get("tool_name") or "tool")


class FailureClassifier:
    """Ordered signature matchers applied to a finished message list."""

    def __init__(
        self,
        signatures: Sequence[FailureSignature] = DEFAULT_SIGNATURES,
        shell_tools: Iterable[str] = ("bash",),
    ) -> None:
        self._signatures = list(signatures)
        self._shell_tools = frozenset(shell_tools)

    def add_signature(self, signature: FailureSignature) -> None:
        self._signatures.append(signature)

    @property
    def signatures(self) -> list[FailureSignature]:
        return list(self._signatures)

    def classify(self, messages: list[dict[str, Any]]) -> Optional[EmbeddedFailure]:
        """Return the first embedded failure, or None if the output looks clean."""
        tool_results = [m for m in messages if m.get("role") == TOOL_RESULT_ROLE]

        # Tool results the worker itself flagged as errors win outright.
        for message in tool_results:
            if message.get("isError") or message.get("is_error"):
                details = _tool_result_text(message) or None
                match = _EXIT_CODE_RE.search(details or "")
                return EmbeddedFailure(
                    exit_code=int(match.group(1)) if match else 1,
                    error_type=_tool_name(message),
                    details=details[:_DETAILS_LIMIT] if details else None,
                )

        for message in tool_results:
            if _tool_name(message) not in self._shell_tools:
                continue
            output = _tool_result_text(message)
            if not output:
                continue

            match = _EXIT_CODE_RE.search(output)
            if match and int(match.group(1)) != 0:
                return EmbeddedFailure(
                    exit_code=int(match.group(1)),
                    error_type=_tool_name(message),
                    details=output[:_DETAILS_LIMIT],
                )

            for signature in self._signatures:
                if signature.matches(output):
                    return EmbeddedFailure(
                        exit_code=1,
                        error_type=_tool_name(message),
                        details=output[:_DETAILS_LIMIT],
                    )

        return None
