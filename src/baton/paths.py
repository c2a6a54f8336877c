from __future__ import annotations

import hashlib
import os
from pathlib import Path

PROJECT_DIRNAME = ".baton"


def baton_home() -> Path:
    env = os.environ.get("BATON_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".baton").resolve()


def ensure_home() -> Path:
    home = baton_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def global_config_path() -> Path:
    return baton_home() / "config.yaml"


def registry_path() -> Path:
    return baton_home() / "registry.json"


def global_agents_dir() -> Path:
    return baton_home() / "agents"


def project_dir(workdir: Path | str) -> Path:
    return Path(workdir) / PROJECT_DIRNAME


def project_config_path(workdir: Path | str) -> Path:
    return project_dir(workdir) / "config.yaml"


def worktree_config_path(workdir: Path | str) -> Path:
    return project_dir(workdir) / "worktree.yaml"


def orchestrator_prompt_path(workdir: Path | str) -> Path:
    return project_dir(workdir) / "orchestrator.md"


def project_agents_dir(workdir: Path | str) -> Path:
    return project_dir(workdir) / "agents"


def sessions_dir(workdir: Path | str) -> Path:
    return project_dir(workdir) / "sessions"


def session_dir(workdir: Path | str, session_id: str) -> Path:
    return sessions_dir(workdir) / session_id


def state_path(workdir: Path | str, session_id: str) -> Path:
    return session_dir(workdir, session_id) / "state.json"


def prompts_dir(workdir: Path | str, session_id: str) -> Path:
    return session_dir(workdir, session_id) / "prompts"


def reports_dir(workdir: Path | str, session_id: str) -> Path:
    return session_dir(workdir, session_id) / "reports"


def context_dir(workdir: Path | str, session_id: str) -> Path:
    return session_dir(workdir, session_id) / "context"


def plan_path(workdir: Path | str, session_id: str) -> Path:
    return session_dir(workdir, session_id) / "plan.md"


def logs_path(workdir: Path | str, session_id: str) -> Path:
    return session_dir(workdir, session_id) / "logs.md"


def worktree_base_dir(workdir: Path | str) -> Path:
    # Worktrees live outside the repository so they never show up as untracked content.
    resolved = str(Path(workdir).expanduser().resolve())
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:12]
    return baton_home() / "worktrees" / f"{Path(resolved).name}-{digest}"
