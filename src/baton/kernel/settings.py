"""Daemon and project settings.

Settings are YAML documents merged in order: built-in defaults, the global
``~/.baton/config.yaml`` and the project ``<workdir>/.baton/config.yaml``.
Worktree bootstrap rules live separately in ``<workdir>/.baton/worktree.yaml``.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore

from ..paths import global_config_path, project_config_path, worktree_config_path

logger = logging.getLogger("baton.settings")

DEFAULT_AGENT_COMMAND = "claude --dangerously-skip-permissions"
DEFAULT_ORCHESTRATOR_COMMAND = "claude --dangerously-skip-permissions"
DEFAULT_OPENAI_COMMAND = "codex --dangerously-bypass-approvals-and-sandbox"

PROVIDERS = ("anthropic", "openai")


@dataclass
class Settings:
    poll_interval_seconds: float = 1.0
    respawn_delay_seconds: float = 2.0
    retention_days: float = 14.0
    stop_timeout_seconds: float = 5.0
    log_level: str = "INFO"
    agent_command: str = DEFAULT_AGENT_COMMAND
    orchestrator_command: str = DEFAULT_ORCHESTRATOR_COMMAND
    providers: Dict[str, str] = field(default_factory=dict)
    provider_commands: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Settings":
        base = cls()
        return cls(
            poll_interval_seconds=_positive_float(d.get("poll_interval_seconds"), base.poll_interval_seconds),
            respawn_delay_seconds=_non_negative_float(d.get("respawn_delay_seconds"), base.respawn_delay_seconds),
            retention_days=_positive_float(d.get("retention_days"), base.retention_days),
            stop_timeout_seconds=_positive_float(d.get("stop_timeout_seconds"), base.stop_timeout_seconds),
            log_level=str(d.get("log_level") or base.log_level).upper(),
            agent_command=str(d.get("agent_command") or base.agent_command),
            orchestrator_command=str(d.get("orchestrator_command") or base.orchestrator_command),
            providers={str(k): str(v) for k, v in (d.get("providers") or {}).items()}
            if isinstance(d.get("providers"), dict)
            else {},
            provider_commands=_provider_commands(d.get("provider_commands")),
        )

    @property
    def retention_seconds(self) -> float:
        return self.retention_days * 86400.0

    def command_for(self, provider: str) -> str:
        """CLI that starts an agent for the given provider."""
        cmd = self.provider_commands.get(provider)
        if cmd:
            return cmd
        if provider == "openai":
            return DEFAULT_OPENAI_COMMAND
        return self.agent_command


@dataclass
class WorktreeConfig:
    copy: List[str] = field(default_factory=list)
    clone: List[str] = field(default_factory=list)
    symlink: List[str] = field(default_factory=list)
    init: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WorktreeConfig":
        return cls(
            copy=_str_list(d.get("copy")),
            clone=_str_list(d.get("clone")),
            symlink=_str_list(d.get("symlink")),
            init=str(d.get("init") or "").strip(),
        )

    def is_empty(self) -> bool:
        return not (self.copy or self.clone or self.symlink or self.init)


def _positive_float(value: Any, default: float) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    return f if f > 0 else default


def _non_negative_float(value: Any, default: float) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    return f if f >= 0 else default


def _provider_commands(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    out: Dict[str, str] = {}
    for k, v in value.items():
        cmd = str(v or "").strip()
        if k in PROVIDERS and cmd:
            out[k] = cmd
        else:
            logger.warning("ignoring provider command for %r", k)
    return out


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int)) and str(v).strip()]


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("ignoring unreadable config %s: %s", path, e)
        return {}
    return doc if isinstance(doc, dict) else {}


def load_settings(workdir: Optional[str] = None) -> Settings:
    merged: Dict[str, Any] = {}
    merged.update(_load_yaml(global_config_path()))
    if workdir:
        merged.update(_load_yaml(project_config_path(workdir)))
    env_level = os.environ.get("BATON_LOG_LEVEL", "").strip()
    if env_level:
        merged["log_level"] = env_level
    return Settings.from_dict(merged)


def load_worktree_config(workdir: str) -> Optional[WorktreeConfig]:
    path = worktree_config_path(workdir)
    if not path.exists():
        return None
    cfg = WorktreeConfig.from_dict(_load_yaml(path))
    return None if cfg.is_empty() else cfg
