"""Per-agent git worktree isolation.

Each isolated agent works on its own branch ``baton/<session8>/<agent-id>``
checked out at a session-scoped path outside the repository. When the
orchestrator is about to be handed control again, pending branches are merged
back with ``--no-ff``; branches without new commits are discarded, and
conflicting merges are aborted and left in place for a human to resolve.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from ..contracts.v1 import Agent
from ..errors import BatonError
from ..paths import PROJECT_DIRNAME, worktree_base_dir
from .git import git_ok, run_git
from .settings import WorktreeConfig

logger = logging.getLogger("baton.worktree")

SNAPSHOT_MESSAGE = "baton: snapshot session state before merge"


class WorktreeError(BatonError):
    code = "worktree_error"


@dataclass
class WorktreeInfo:
    path: str
    branch: str


@dataclass
class MergeResult:
    agent_id: str
    name: str
    status: str
    details: Optional[str] = None


def branch_name_for(session_id: str, agent_id: str) -> str:
    return f"baton/{session_id[:8]}/{agent_id}"


def worktree_path_for(workdir: str, session_id: str, agent_id: str) -> Path:
    return worktree_base_dir(workdir) / session_id[:8] / agent_id


def create_worktree(workdir: str, session_id: str, agent_id: str) -> WorktreeInfo:
    """Create a fresh branch at HEAD and check it out in a new worktree.

    Leftovers from an earlier run with the same name are removed first.
    Bootstrap is deliberately not part of this call.
    """
    branch = branch_name_for(session_id, agent_id)
    path = worktree_path_for(workdir, session_id, agent_id)
    path.parent.mkdir(parents=True, exist_ok=True)

    git_ok(["worktree", "prune"], cwd=workdir)
    if path.exists():
        git_ok(["worktree", "remove", "--force", str(path)], cwd=workdir)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
    git_ok(["branch", "-D", branch], cwd=workdir)

    code, _, err = run_git(["branch", branch, "HEAD"], cwd=workdir)
    if code != 0:
        raise WorktreeError(f"cannot create branch {branch}: {err}")
    code, _, err = run_git(["worktree", "add", str(path), branch], cwd=workdir)
    if code != 0:
        git_ok(["branch", "-D", branch], cwd=workdir)
        raise WorktreeError(f"cannot create worktree {path}: {err}")

    logger.info("worktree created: %s on %s", path, branch)
    return WorktreeInfo(path=str(path), branch=branch)


def _clone_tree(src: Path, dest: Path) -> None:
    """Copy-on-write clone where the platform supports it, else a deep copy."""
    if sys.platform == "darwin":
        cmd = ["cp", "-Rc", str(src), str(dest)]
    else:
        cmd = ["cp", "-R", "--reflink=auto", str(src), str(dest)]
    try:
        p = subprocess.run(cmd, capture_output=True, text=True, check=False)
        if p.returncode == 0:
            return
    except OSError:
        pass
    _copy_tree(src, dest)


def _copy_tree(src: Path, dest: Path) -> None:
    if src.is_dir():
        shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dest)


def bootstrap_worktree(workdir: str, worktree_path: str, config: WorktreeConfig) -> None:
    """Populate a new worktree with untracked files and run the init command.

    Every step is best-effort: a missing source or failing command is logged
    and the remaining steps still run.
    """
    root = Path(workdir)
    wt = Path(worktree_path)

    for entry in config.copy:
        src, dest = root / entry, wt / entry
        if not src.exists():
            logger.warning("worktree copy source missing: %s", src)
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            _copy_tree(src, dest)
        except OSError as e:
            logger.warning("worktree copy %s failed: %s", entry, e)

    for entry in config.clone:
        src, dest = root / entry, wt / entry
        if not src.exists():
            logger.warning("worktree clone source missing: %s", src)
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            _clone_tree(src, dest)
        except OSError as e:
            logger.warning("worktree clone %s failed: %s", entry, e)

    for entry in config.symlink:
        src, dest = root / entry, wt / entry
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            if dest.is_symlink() or dest.exists():
                continue
            os.symlink(src, dest)
        except OSError as e:
            logger.warning("worktree symlink %s failed: %s", entry, e)

    if config.init:
        try:
            p = subprocess.run(config.init, shell=True, cwd=str(wt), capture_output=True, text=True, check=False)
            if p.returncode != 0:
                logger.warning("worktree init command failed (%s): %s", p.returncode, (p.stderr or p.stdout).strip())
        except OSError as e:
            logger.warning("worktree init command failed: %s", e)


def resolve_worktree_branch(workdir: str, worktree_path: str) -> Optional[str]:
    """Branch checked out in ``worktree_path`` per ``git worktree list``; None if detached/absent."""
    code, out, _ = run_git(["worktree", "list", "--porcelain"], cwd=workdir)
    if code != 0 or not out:
        return None
    wanted = os.path.realpath(worktree_path)
    current: Optional[str] = None
    for line in out.splitlines():
        if line.startswith("worktree "):
            current = os.path.realpath(line[len("worktree ") :])
            continue
        if current == wanted and line.startswith("branch refs/heads/"):
            return line[len("branch refs/heads/") :]
        if not line.strip():
            current = None
    return None


def snapshot_state(workdir: str) -> bool:
    """Commit tracked housekeeping changes so they never surface as merge conflicts."""
    if not (Path(workdir) / PROJECT_DIRNAME).exists():
        return False
    git_ok(["add", "-u", "--", PROJECT_DIRNAME], cwd=workdir)
    code, _, _ = run_git(["diff", "--cached", "--quiet", "--", PROJECT_DIRNAME], cwd=workdir)
    if code == 0:
        return False
    return git_ok(["commit", "-m", SNAPSHOT_MESSAGE, "--", PROJECT_DIRNAME], cwd=workdir)


def _has_commits_ahead(workdir: str, branch: str) -> bool:
    code, out, _ = run_git(["log", "--oneline", f"HEAD..{branch}"], cwd=workdir)
    return code == 0 and bool(out)


def merge_worktrees(workdir: str, agents: Iterable[Agent]) -> List[MergeResult]:
    pending = [a for a in agents if a.worktree_path and a.merge_status == "pending"]
    if not pending:
        return []

    snapshot_state(workdir)

    results: List[MergeResult] = []
    for agent in pending:
        path = str(agent.worktree_path)
        branch = resolve_worktree_branch(workdir, path)

        if not branch:
            # Branch unknown: only the checkout can be cleaned up.
            git_ok(["worktree", "remove", "--force", path], cwd=workdir)
            results.append(MergeResult(agent.id, agent.name, "no-changes"))
            continue

        if not _has_commits_ahead(workdir, branch):
            cleanup_worktree(workdir, path, branch)
            results.append(MergeResult(agent.id, agent.name, "no-changes"))
            continue

        message = f"baton: merge {agent.id} ({agent.name})"
        code, out, err = run_git(["merge", "--no-ff", branch, "-m", message], cwd=workdir)
        if code == 0:
            cleanup_worktree(workdir, path, branch)
            results.append(MergeResult(agent.id, agent.name, "merged"))
            logger.info("merged %s from %s", agent.id, branch)
            continue

        git_ok(["merge", "--abort"], cwd=workdir)
        # git reports conflicting files on stdout
        details = out or err or f"git merge exited with {code}"
        results.append(MergeResult(agent.id, agent.name, "conflict", details))
        logger.warning("merge conflict for %s on %s", agent.id, branch)

    return results


def cleanup_worktree(workdir: str, worktree_path: str, branch: str) -> None:
    git_ok(["worktree", "remove", "--force", worktree_path], cwd=workdir)
    git_ok(["branch", "-D", branch], cwd=workdir)
    _remove_if_empty(Path(worktree_path).parent)


def discard_worktree(workdir: str, worktree_path: str, branch: Optional[str]) -> None:
    """Remove a checkout; the branch survives when it still carries unmerged commits."""
    git_ok(["worktree", "remove", "--force", worktree_path], cwd=workdir)
    if branch and not _has_commits_ahead(workdir, branch):
        git_ok(["branch", "-D", branch], cwd=workdir)
    _remove_if_empty(Path(worktree_path).parent)


def _remove_if_empty(directory: Path) -> None:
    try:
        if directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()
    except OSError:
        pass
