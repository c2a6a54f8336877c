from __future__ import annotations

from .base import PaneInfo, ProcessDriver
from .tmux import TmuxDriver

__all__ = ["PaneInfo", "ProcessDriver", "TmuxDriver"]
