"""
Agent Definitions — Who a Task Is Delegated To.

An agent label in a TaskSpec names a definition on disk. Definition files
are Markdown documents with a JSON frontmatter block; the body becomes the
agent's system prompt:

    ---
    {
      "name": "scout",
      "description": "Fast read-only codebase reconnaissance.",
      "model": "claude-haiku-4-5",
      "tools": ["read", "grep", "find", "ls"]
    }
    ---

    You are a scout. Map the relevant code quickly and report back...

Directories are searched in order; a later directory overrides an earlier
one with the same agent name (project definitions shadow user ones).
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

# Match --- JSON block --- at the very start of the file
_FRONTMATTER_RE = re.compile(r"^\s*---\s*\n(\{.*?\})\s*\n---\s*\n?(.*)", re.DOTALL)


class AgentConfig(BaseModel):
    """Resolved definition of one worker agent."""

    name: str
    description: str = ""
    model: Optional[str] = None
    tools: list[str] = Field(default_factory=list)
    system_prompt: str = ""
    source_file: Optional[str] = None


def parse_agent_file(path: Path) -> AgentConfig | None:
    """Parse an agent .md file. Returns None (with a warning logged) on failure."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("agents.read_error", path=str(path), error=str(e))
        return None

    match = _FRONTMATTER_RE.match(raw)
    if not match:
        logger.warning(
            "agents.no_frontmatter",
            path=str(path),
            hint="File must start with --- { JSON } --- frontmatter",
        )
        return None

    try:
        meta: dict[str, Any] = json.loads(match.group(1).strip())
    except json.JSONDecodeError as e:
        logger.warning("agents.invalid_json", path=str(path), error=str(e))
        return None

    name = meta.get("name") or path.stem
    tools = meta.get("tools", [])
    if isinstance(tools, str):
        tools = [t.strip() for t in tools.split(",") if t.strip()]

    return AgentConfig(
        name=str(name),
        description=str(meta.get("description", "")),
        model=meta.get("model") or None,
        tools=[str(t) for t in tools],
        system_prompt=match.group(2).strip(),
        source_file=str(path),
    )


def discover_agents(directories: Iterable[Path]) -> list[AgentConfig]:
    """Load agent definitions from *directories*; later directories win."""
    by_name: dict[str, AgentConfig] = {}
    for directory in directories:
        directory = Path(directory)
        if not directory.is_dir():
            continue
        for md_file in sorted(directory.glob("*.md")):
            if md_file.name.startswith("."):
                continue
            agent = parse_agent_file(md_file)
            if agent is None:
                logger.warning("agents.skipped", file=md_file.name)
                continue
            by_name[agent.name] = agent
            logger.debug("agents.loaded", name=agent.name, file=md_file.name)
    return sorted(by_name.values(), key=lambda a: a.name)


class AgentRegistry:
    """Lookup table of agent definitions by name."""

    def __init__(self, agents: Iterable[AgentConfig] = ()) -> None:
        self._agents: dict[str, AgentConfig] = {a.name: a for a in agents}

    @classmethod
    def from_directories(cls, directories: Iterable[Path]) -> "AgentRegistry":
        return cls(discover_agents(directories))

    @classmethod
    def bare(cls, names: Iterable[str]) -> "AgentRegistry":
        """Registry of definition-less agents whose settings travel in each TaskSpec."""
        return cls(AgentConfig(name=name) for name in names)

    def get(self, name: str) -> Optional[AgentConfig]:
        return self._agents.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    @property
    def names(self) -> list[str]:
        return sorted(self._agents)

    def all(self) -> list[AgentConfig]:
        return [self._agents[name] for name in self.names]
