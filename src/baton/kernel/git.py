from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger("baton.git")


def run_git(args: List[str], *, cwd: Path | str, timeout_s: float = 120.0) -> Tuple[int, str, str]:
    try:
        p = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
            check=False,
        )
        return int(p.returncode), (p.stdout or "").strip(), (p.stderr or "").strip()
    except subprocess.TimeoutExpired:
        return 124, "", "git timeout"
    except OSError as e:
        return 1, "", str(e)


def git_ok(args: List[str], *, cwd: Path | str) -> bool:
    """Best-effort git call; failures are logged, never raised."""
    code, _, err = run_git(args, cwd=cwd)
    if code != 0:
        logger.debug("git %s failed (%s): %s", " ".join(args), code, err)
    return code == 0
