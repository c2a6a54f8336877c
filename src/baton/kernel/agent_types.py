"""Agent type definitions.

An agent type is a markdown file with an optional YAML frontmatter block::

    ---
    model: gpt-5-codex
    color: teal
    ---
    Extra instructions appended to every agent of this type.

Types are looked up by name in the project (``<workdir>/.baton/agents``)
and then in the global agents directory. ``namespace:name`` looks in a
``<namespace>/`` subdirectory of the same roots.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml  # type: ignore

from ..errors import InvalidValueError
from ..paths import global_agents_dir, project_agents_dir

logger = logging.getLogger("baton.agent_types")

_FRONTMATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)(.*)\Z", re.DOTALL)
_OPENAI_MODEL_RE = re.compile(r"^(gpt-|o\d+-|codex-)")


@dataclass
class AgentType:
    name: str
    path: Optional[Path] = None
    frontmatter: Dict[str, Any] = field(default_factory=dict)
    body: str = ""

    @property
    def model(self) -> str:
        return str(self.frontmatter.get("model") or "").strip()

    @property
    def color(self) -> str:
        return str(self.frontmatter.get("color") or "").strip()


def split_frontmatter(content: str) -> tuple[Dict[str, Any], str]:
    m = _FRONTMATTER_RE.match(content or "")
    if not m:
        return {}, (content or "").strip()
    try:
        fm = yaml.safe_load(m.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning("invalid agent frontmatter: %s", e)
        fm = {}
    return (fm if isinstance(fm, dict) else {}), m.group(2).strip()


def detect_provider(model: str, overrides: Optional[Mapping[str, str]] = None) -> str:
    m = str(model or "").strip()
    if not m:
        return "anthropic"
    for prefix, provider in (overrides or {}).items():
        if prefix and m.startswith(prefix) and provider in ("anthropic", "openai"):
            return provider
    return "openai" if _OPENAI_MODEL_RE.match(m) else "anthropic"


def _search_paths(agent_type: str, workdir: str) -> List[Path]:
    parts = agent_type.split(":", 1)
    for part in parts:
        if not part or part == "." or ".." in part or "/" in part or "\\" in part:
            raise InvalidValueError(f"invalid agent type: {agent_type}")
    rel = Path(*parts[:-1]) / f"{parts[-1]}.md"
    return [project_agents_dir(workdir) / rel, global_agents_dir() / rel]


def resolve_agent_type(agent_type: str, workdir: str) -> AgentType:
    """Resolve an agent type name; unknown types resolve to an empty definition."""
    name = str(agent_type or "").strip()
    if not name:
        return AgentType(name="")
    for path in _search_paths(name, workdir):
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("cannot read agent type %s: %s", path, e)
            continue
        fm, body = split_frontmatter(content)
        return AgentType(name=name, path=path, frontmatter=fm, body=body)
    return AgentType(name=name)
