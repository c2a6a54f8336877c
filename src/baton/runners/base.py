from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol


@dataclass(frozen=True)
class PaneInfo:
    pane_id: str
    pid: int = 0


class ProcessDriver(Protocol):
    """Narrow surface of the terminal multiplexer the daemon depends on."""

    async def create_pane(self, window: str, cwd: Optional[str] = None) -> str: ...

    async def kill_pane(self, pane_id: str) -> None: ...

    async def kill_window(self, window: str) -> None: ...

    async def window_exists(self, window: str) -> bool: ...

    async def list_panes(self, window: str) -> List[PaneInfo]: ...

    async def send_keys(self, pane_id: str, command: str) -> None: ...

    async def set_pane_title(self, pane_id: str, title: str) -> None: ...

    async def set_pane_style(self, pane_id: str, color: str) -> None: ...

    async def select_layout(self, window: str, layout: str = "tiled") -> None: ...
