"""Polling loop that notices panes which vanished without a lifecycle event."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from ..contracts.v1 import Session
from ..errors import SessionCompletedError
from ..kernel.state import StateStore
from ..runners.base import ProcessDriver
from .agents import AgentController
from .orchestrator import OrchestratorController
from .registry import SessionRegistry

logger = logging.getLogger("baton.monitor")

LOST_REASON = "pane closed"


class HealthMonitor:
    def __init__(
        self,
        store: StateStore,
        driver: ProcessDriver,
        registry: SessionRegistry,
        agents: AgentController,
        orchestrator: OrchestratorController,
        *,
        on_all_done: Callable[[str], Awaitable[object]],
        interval: float = 1.0,
    ) -> None:
        self._store = store
        self._driver = driver
        self._registry = registry
        self._agents = agents
        self._orchestrator = orchestrator
        self._on_all_done = on_all_done
        self.interval = interval
        self._tracked: Set[str] = set()
        self._task: Optional[asyncio.Task] = None

    def track(self, session_id: str) -> None:
        self._tracked.add(session_id)

    def untrack(self, session_id: str) -> None:
        self._tracked.discard(session_id)

    def tracked(self) -> List[str]:
        return sorted(self._tracked)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="baton-monitor")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await self.check_all()
            await asyncio.sleep(self.interval)

    async def check_all(self) -> None:
        for session_id in self.tracked():
            try:
                await self.check_session(session_id)
            except Exception:
                logger.exception("health check failed", extra={"session_id": session_id, "op": "poll"})

    async def check_session(self, session_id: str) -> None:
        rt = self._registry.get(session_id)
        if rt is None or not rt.window or session_id not in self._tracked:
            return
        workdir = rt.workdir
        session = self._store.read(workdir, session_id)
        if session.status != "active":
            return

        panes = await self._driver.list_panes(rt.window)
        if not panes:
            # Listing failed or the window is mid-teardown; try again next tick.
            return
        live = {p.pane_id for p in panes}
        try:
            await self._reconcile(session_id, workdir, session, live)
        except SessionCompletedError:
            # Killed or completed while the pane listing was in flight.
            logger.debug("session completed during health check", extra={"session_id": session_id, "op": "poll"})

    async def _reconcile(self, session_id: str, workdir: str, session: Session, live: Set[str]) -> None:
        all_done = False
        for agent in session.running_agents():
            if agent.pane_id and agent.pane_id in live:
                continue
            updated = await self._agents.kill(session_id, workdir, agent.id, LOST_REASON, status="lost")
            if updated is not None and updated.all_agents_done():
                all_done = True
        if all_done:
            await self._on_all_done(session_id)

        session = self._store.read(workdir, session_id)
        if session.current_cycle() is None:
            return
        orch_pane = self._orchestrator.pane_for(session)
        if orch_pane and orch_pane not in live:
            await self._orchestrator.close_vanished(session_id, workdir)
