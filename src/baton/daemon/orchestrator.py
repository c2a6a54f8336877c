"""Orchestrator activations: one pane and one cycle per spawn."""
from __future__ import annotations

import logging
from typing import Callable, Optional

from ..contracts.v1 import ORCHESTRATOR_AGENT_ID, OrchestratorCycle, Session
from ..errors import InvalidTransitionError
from ..kernel.colors import ORCHESTRATOR_COLOR
from ..kernel.prompts import build_launch_command, compose_orchestrator_message, load_orchestrator_prompt
from ..kernel.settings import Settings, load_settings
from ..kernel.state import StateStore
from ..paths import prompts_dir
from ..runners.base import ProcessDriver
from ..runners.tmux import env_prefix
from ..util.fs import write_text
from .registry import SessionRegistry

logger = logging.getLogger("baton.orchestrator")


class OrchestratorController:
    def __init__(
        self,
        store: StateStore,
        driver: ProcessDriver,
        registry: SessionRegistry,
        *,
        settings_loader: Callable[[Optional[str]], Settings] = load_settings,
    ) -> None:
        self._store = store
        self._driver = driver
        self._registry = registry
        self._settings_loader = settings_loader

    def pane_for(self, session: Session) -> Optional[str]:
        """Orchestrator pane of the open cycle: memory first, then the document."""
        rt = self._registry.get(session.id)
        if rt is not None and rt.orchestrator_pane:
            return rt.orchestrator_pane
        cycle = session.current_cycle()
        return cycle.pane_id if cycle is not None else None

    def _forget_pane(self, session_id: str, pane_id: Optional[str]) -> None:
        rt = self._registry.get(session_id)
        if rt is not None:
            rt.orchestrator_pane = None
        if pane_id:
            self._registry.unregister_pane(pane_id)

    async def spawn(self, session_id: str, workdir: str, window: str, message: str = "") -> OrchestratorCycle:
        session = self._store.read(workdir, session_id)
        if session.status != "active":
            raise InvalidTransitionError(f"session {session_id} is {session.status}; cannot start orchestrator")

        last = session.last_cycle()
        number = (last.cycle + 1) if last is not None else 1
        pdir = prompts_dir(workdir, session_id)
        system_file = write_text(pdir / f"orchestrator-system-{number}.md", load_orchestrator_prompt(workdir))
        user_file = write_text(
            pdir / f"orchestrator-user-{number}.md",
            compose_orchestrator_message(session, message or ""),
        )

        pane_id = await self._driver.create_pane(window, workdir)
        try:
            cycle = await self._store.add_cycle(workdir, session_id, pane_id=pane_id)
        except BaseException:
            await self._driver.kill_pane(pane_id)
            raise

        rt = self._registry.ensure(session_id, workdir)
        rt.window = window
        rt.orchestrator_pane = pane_id
        self._registry.register_pane(pane_id, session_id, "orchestrator")

        await self._driver.set_pane_title(pane_id, f"orchestrator (cycle {cycle.cycle})")
        await self._driver.set_pane_style(pane_id, ORCHESTRATOR_COLOR)
        await self._driver.select_layout(window)

        settings = self._settings_loader(workdir)
        env_line = env_prefix({"BATON_SESSION_ID": session_id, "BATON_AGENT_ID": ORCHESTRATOR_AGENT_ID})
        command = build_launch_command(
            env_line,
            settings.orchestrator_command,
            system_prompt_file=str(system_file),
            message_file=str(user_file),
        )
        await self._driver.send_keys(pane_id, command)
        logger.info(
            "orchestrator spawned in %s",
            pane_id,
            extra={"session_id": session_id, "cycle": cycle.cycle, "pane_id": pane_id, "op": "spawn"},
        )
        return cycle

    async def yield_(self, session_id: str, workdir: str, next_prompt: Optional[str] = None) -> bool:
        """Close the current cycle and tear down its pane.

        Returns True when no agent is running, i.e. the orchestrator should be
        brought back right away.
        """
        session = self._store.read(workdir, session_id)
        pane_id = self.pane_for(session)
        if session.current_cycle() is None:
            raise InvalidTransitionError(f"session {session_id} has no active orchestrator cycle")

        cycle = await self._store.complete_cycle(workdir, session_id, next_prompt=next_prompt)
        # Unregister before killing so the exit notification is ignored.
        self._forget_pane(session_id, pane_id)
        if pane_id:
            await self._driver.kill_pane(pane_id)
        rt = self._registry.get(session_id)
        if rt is not None and rt.window:
            await self._driver.select_layout(rt.window)

        updated = self._store.read(workdir, session_id)
        idle = not updated.running_agents()
        logger.info(
            "orchestrator yielded (running agents: %d)",
            len(updated.running_agents()),
            extra={"session_id": session_id, "cycle": cycle.cycle if cycle else None, "op": "yield"},
        )
        return idle

    async def complete(self, session_id: str, workdir: str, report: str) -> Session:
        session = self._store.read(workdir, session_id)
        pane_id = self.pane_for(session)
        # Completing the session also closes the open cycle.
        updated = await self._store.complete_session(workdir, session_id, report)
        self._forget_pane(session_id, pane_id)
        if pane_id:
            await self._driver.kill_pane(pane_id)
        logger.info("session completed", extra={"session_id": session_id, "op": "complete"})
        return updated

    async def close_vanished(self, session_id: str, workdir: str) -> Optional[str]:
        """Handle an orchestrator pane that exited without yield or complete.

        With agents still running only the cycle is closed, so their completion
        brings the orchestrator back; otherwise the session is paused. Returns
        the resulting session status, or None when nothing was open.
        """
        session = self._store.read(workdir, session_id)
        if session.status != "active" or session.current_cycle() is None:
            return None
        self._forget_pane(session_id, self.pane_for(session))
        if session.running_agents():
            await self._store.complete_cycle(workdir, session_id)
            logger.warning("orchestrator pane vanished; cycle closed", extra={"session_id": session_id})
            return "active"
        await self._store.pause_session(workdir, session_id)
        logger.warning("orchestrator pane vanished; session paused", extra={"session_id": session_id})
        return "paused"
