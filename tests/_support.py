from __future__ import annotations

import os
import tempfile
from typing import Callable, Dict, List, Optional, Tuple

from baton.errors import DriverError
from baton.kernel.settings import Settings
from baton.runners.base import PaneInfo


class FakeDriver:
    """In-memory stand-in for tmux: windows hold ordered pane ids."""

    def __init__(self) -> None:
        self.windows: Dict[str, List[str]] = {}
        self.cwds: Dict[str, Optional[str]] = {}
        self.commands: Dict[str, List[str]] = {}
        self.titles: Dict[str, str] = {}
        self.styles: Dict[str, str] = {}
        self.killed: List[str] = []
        self.killed_windows: List[str] = []
        self.fail_create = False
        self._n = 0

    def add_window(self, window: str) -> None:
        # Every real window starts with the user's own shell pane.
        self._n += 1
        self.windows.setdefault(window, [f"%{self._n}"])

    def vanish(self, pane_id: str) -> None:
        for panes in self.windows.values():
            if pane_id in panes:
                panes.remove(pane_id)

    def live(self, window: str) -> List[str]:
        return list(self.windows.get(window, []))

    async def create_pane(self, window: str, cwd: Optional[str] = None) -> str:
        if self.fail_create or window not in self.windows:
            raise DriverError(f"cannot split {window}")
        self._n += 1
        pane_id = f"%{self._n}"
        self.windows[window].append(pane_id)
        self.cwds[pane_id] = cwd
        return pane_id

    async def kill_pane(self, pane_id: str) -> None:
        self.killed.append(pane_id)
        self.vanish(pane_id)

    async def kill_window(self, window: str) -> None:
        self.killed_windows.append(window)
        self.windows.pop(window, None)

    async def window_exists(self, window: str) -> bool:
        return window in self.windows

    async def list_panes(self, window: str) -> List[PaneInfo]:
        return [PaneInfo(pane_id=p, pid=1000 + i) for i, p in enumerate(self.windows.get(window, []))]

    async def send_keys(self, pane_id: str, command: str) -> None:
        self.commands.setdefault(pane_id, []).append(command)

    async def set_pane_title(self, pane_id: str, title: str) -> None:
        self.titles[pane_id] = title

    async def set_pane_style(self, pane_id: str, color: str) -> None:
        self.styles[pane_id] = color

    async def select_layout(self, window: str, layout: str = "tiled") -> None:
        pass


def fast_settings(workdir: Optional[str] = None) -> Settings:
    return Settings(poll_interval_seconds=0.05, respawn_delay_seconds=0.0)


def with_home() -> Tuple[str, str, Callable[[], None]]:
    """Temporary BATON_HOME plus a workdir; returns (home, workdir, cleanup)."""
    old_home = os.environ.get("BATON_HOME")
    home_ctx = tempfile.TemporaryDirectory()
    work_ctx = tempfile.TemporaryDirectory()
    home = home_ctx.__enter__()
    workdir = os.path.realpath(work_ctx.__enter__())
    os.environ["BATON_HOME"] = home

    def cleanup() -> None:
        work_ctx.__exit__(None, None, None)
        home_ctx.__exit__(None, None, None)
        if old_home is None:
            os.environ.pop("BATON_HOME", None)
        else:
            os.environ["BATON_HOME"] = old_home

    return home, workdir, cleanup
