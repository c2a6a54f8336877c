"""In-memory indices owned by the coordinator.

Nothing in here is authoritative: every entry can be rebuilt from the
persisted session documents (``SessionRegistry.rebuild``).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Literal, Optional

from ..contracts.v1 import Session, format_agent_id, parse_agent_counter
from ..kernel.colors import palette_color

PaneRole = Literal["orchestrator", "agent"]


@dataclass
class SessionRuntime:
    session_id: str
    workdir: str
    tmux_session: str = ""
    window: Optional[str] = None
    orchestrator_pane: Optional[str] = None
    agent_counter: int = 0
    color_index: int = 0

    def next_agent_id(self) -> str:
        self.agent_counter += 1
        return format_agent_id(self.agent_counter)

    def next_color(self) -> str:
        color = palette_color(self.color_index)
        self.color_index += 1
        return color

    def release_agent_id(self, agent_id: str) -> bool:
        """Give back an id whose spawn failed, unless a later spawn already took one."""
        if self.agent_counter != parse_agent_counter(agent_id):
            return False
        self.agent_counter -= 1
        self.color_index = max(0, self.color_index - 1)
        return True

    def sync_counters(self, session: Session) -> None:
        self.agent_counter = session.max_agent_counter()
        self.color_index = len(session.agents)


@dataclass(frozen=True)
class PaneEntry:
    session_id: str
    role: PaneRole
    agent_id: Optional[str] = None


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRuntime] = {}
        self._panes: Dict[str, PaneEntry] = {}

    def get(self, session_id: str) -> Optional[SessionRuntime]:
        return self._sessions.get(session_id)

    def ensure(self, session_id: str, workdir: str) -> SessionRuntime:
        rt = self._sessions.get(session_id)
        if rt is None:
            rt = SessionRuntime(session_id=session_id, workdir=workdir)
            self._sessions[session_id] = rt
        return rt

    def drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self.unregister_session_panes(session_id)

    def runtimes(self) -> List[SessionRuntime]:
        return list(self._sessions.values())

    def rebuild(self, session: Session) -> SessionRuntime:
        """Re-derive runtime state for one session from its document."""
        rt = self.ensure(session.id, session.cwd)
        rt.sync_counters(session)
        rt.tmux_session = session.tmux_session or rt.tmux_session
        rt.window = session.tmux_window or rt.window
        self.unregister_session_panes(session.id)
        current = session.current_cycle()
        rt.orchestrator_pane = current.pane_id if current is not None else None
        if rt.orchestrator_pane:
            self.register_pane(rt.orchestrator_pane, session.id, "orchestrator")
        for agent in session.running_agents():
            if agent.pane_id:
                self.register_pane(agent.pane_id, session.id, "agent", agent.id)
        return rt

    # ------------------------------------------------------------------
    # panes
    # ------------------------------------------------------------------

    def register_pane(self, pane_id: str, session_id: str, role: PaneRole, agent_id: Optional[str] = None) -> None:
        self._panes[pane_id] = PaneEntry(session_id=session_id, role=role, agent_id=agent_id)

    def unregister_pane(self, pane_id: str) -> None:
        self._panes.pop(pane_id, None)

    def unregister_agent_pane(self, session_id: str, agent_id: str) -> None:
        for pane_id, entry in list(self._panes.items()):
            if entry.session_id == session_id and entry.agent_id == agent_id:
                del self._panes[pane_id]

    def unregister_session_panes(self, session_id: str) -> None:
        for pane_id, entry in list(self._panes.items()):
            if entry.session_id == session_id:
                del self._panes[pane_id]

    def lookup_pane(self, pane_id: str) -> Optional[PaneEntry]:
        return self._panes.get(pane_id)
