from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Dict, List, Optional, Tuple

from ..errors import DriverError
from ..kernel.colors import normalize_tmux_color
from .base import PaneInfo

logger = logging.getLogger("baton.tmux")


async def _run_tmux(args: List[str], *, timeout_s: float = 5.0) -> Tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            "tmux",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return 1, "", str(e)
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return 124, "", "tmux timeout"
    return int(proc.returncode or 0), out.decode("utf-8", "replace"), err.decode("utf-8", "replace")


def env_prefix(env: Dict[str, str]) -> str:
    parts = [f"export {k}={shlex.quote(v)}" for k, v in env.items() if k.strip()]
    return " && ".join(parts)


class TmuxDriver:
    """Process driver backed by the tmux CLI.

    Only pane creation raises; every other call is best-effort and logs
    failures, since panes may legitimately vanish underneath us.
    """

    async def _best_effort(self, args: List[str]) -> bool:
        code, _, err = await _run_tmux(args)
        if code != 0:
            logger.warning("tmux %s failed: %s", args[0], err.strip())
        return code == 0

    async def create_pane(self, window: str, cwd: Optional[str] = None) -> str:
        args = ["split-window", "-h", "-t", window, "-P", "-F", "#{pane_id}"]
        if cwd:
            args[2:2] = ["-c", cwd]
        code, out, err = await _run_tmux(args)
        pane_id = out.strip()
        if code != 0 or not pane_id:
            raise DriverError(f"tmux split-window failed for {window}: {err.strip() or 'no pane id'}")
        return pane_id

    async def kill_pane(self, pane_id: str) -> None:
        await _run_tmux(["kill-pane", "-t", pane_id])

    async def kill_window(self, window: str) -> None:
        await _run_tmux(["kill-window", "-t", window])

    async def window_exists(self, window: str) -> bool:
        code, out, _ = await _run_tmux(["display-message", "-p", "-t", window, "#{window_id}"])
        return code == 0 and bool(out.strip())

    async def list_panes(self, window: str) -> List[PaneInfo]:
        code, out, _ = await _run_tmux(["list-panes", "-t", window, "-F", "#{pane_id} #{pane_pid}"])
        if code != 0:
            return []
        panes: List[PaneInfo] = []
        for line in out.splitlines():
            parts = line.strip().split()
            if not parts:
                continue
            pid = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 0
            panes.append(PaneInfo(pane_id=parts[0], pid=pid))
        return panes

    async def send_keys(self, pane_id: str, command: str) -> None:
        if await self._best_effort(["send-keys", "-t", pane_id, "-l", command]):
            await self._best_effort(["send-keys", "-t", pane_id, "Enter"])

    async def set_pane_title(self, pane_id: str, title: str) -> None:
        await self._best_effort(["select-pane", "-t", pane_id, "-T", title])

    async def set_pane_style(self, pane_id: str, color: str) -> None:
        await self._best_effort(["select-pane", "-t", pane_id, "-P", f"border-style=fg={normalize_tmux_color(color)}"])

    async def select_layout(self, window: str, layout: str = "tiled") -> None:
        await _run_tmux(["select-layout", "-t", window, layout])
