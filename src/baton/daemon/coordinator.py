"""Session state machine: start, resume, kill, respawn and restart recovery.

The coordinator owns every in-memory index (``SessionRegistry``) and the
controllers that act on a session. All of them can be thrown away and rebuilt
from the session documents; ``recover`` does exactly that on daemon start.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from ..contracts.v1 import Agent, Session, Task
from ..errors import BatonError, InvalidValueError, NotFoundError
from ..kernel.registry import Registry, load_registry
from ..kernel.settings import Settings, load_settings
from ..kernel.state import StateStore, session_workdir
from ..kernel.worktree import discard_worktree, merge_worktrees
from ..runners.base import ProcessDriver
from ..util.time import utc_now_iso
from .agents import AgentController
from .monitor import HealthMonitor
from .orchestrator import OrchestratorController
from .registry import SessionRegistry

logger = logging.getLogger("baton.coordinator")

KILL_REASON = "session killed by user"
RESUME_LOST_REASON = "pane not alive when the session resumed"


class NoWindowError(BatonError):
    code = "no_window"


class SessionCoordinator:
    def __init__(
        self,
        driver: ProcessDriver,
        *,
        store: Optional[StateStore] = None,
        index: Optional[Registry] = None,
        settings_loader: Callable[[Optional[str]], Settings] = load_settings,
    ) -> None:
        self.driver = driver
        self.store = store or StateStore()
        self.index = index or load_registry()
        self.sessions = SessionRegistry()
        self._settings_loader = settings_loader
        self.agents = AgentController(self.store, driver, self.sessions, settings_loader=settings_loader)
        self.orchestrator = OrchestratorController(self.store, driver, self.sessions, settings_loader=settings_loader)
        self.monitor = HealthMonitor(
            self.store,
            driver,
            self.sessions,
            self.agents,
            self.orchestrator,
            on_all_done=self.request_respawn,
            interval=settings_loader(None).poll_interval_seconds,
        )
        self._respawning: Set[str] = set()
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------

    def workdir_for(self, session_id: str) -> str:
        rt = self.sessions.get(session_id)
        if rt is not None:
            return rt.workdir
        workdir = self.index.workdir_for(session_id)
        if workdir is None:
            raise NotFoundError("session", session_id)
        return workdir

    def load(self, session_id: str) -> Session:
        return self.store.read(self.workdir_for(session_id), session_id)

    def _window_for(self, session: Session) -> str:
        rt = self.sessions.get(session.id)
        window = (rt.window if rt is not None else None) or session.tmux_window
        if not window:
            raise NoWindowError(f"no tmux window known for session {session.id}")
        return window

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self, task: str, cwd: str, tmux_window: str, tmux_session: str = "") -> Session:
        workdir = _checked_workdir(cwd)
        session_id = str(uuid.uuid4())
        self.store.create(session_id, task, workdir, tmux_session=tmux_session, tmux_window=tmux_window)
        self.index.register(session_id, workdir)

        rt = self.sessions.ensure(session_id, workdir)
        rt.tmux_session = tmux_session
        rt.window = tmux_window
        self.monitor.track(session_id)
        try:
            await self.orchestrator.spawn(session_id, workdir, tmux_window)
        except BaseException:
            # Nothing ran yet: drop the half-made session entirely.
            self.monitor.untrack(session_id)
            self.sessions.drop(session_id)
            self.store.delete_session(workdir, session_id)
            self.index.forget(session_id)
            raise
        logger.info("session started", extra={"session_id": session_id, "op": "start"})
        return self.store.read(workdir, session_id)

    async def resume(
        self,
        session_id: str,
        cwd: str,
        tmux_window: str,
        tmux_session: str = "",
        message: Optional[str] = None,
    ) -> Session:
        workdir = _checked_workdir(cwd)
        session = self.store.read(workdir, session_id)

        live: Set[str] = set()
        for window in {tmux_window, session.tmux_window or ""}:
            if window and await self.driver.window_exists(window):
                live.update(p.pane_id for p in await self.driver.list_panes(window))
        stale_orchestrator = self.orchestrator.pane_for(session)

        def _apply(s: Session) -> List[str]:
            lost: List[str] = []
            for agent in s.running_agents():
                if agent.pane_id and agent.pane_id in live:
                    continue
                agent.status = "lost"
                agent.completed_at = utc_now_iso()
                agent.killed_reason = RESUME_LOST_REASON
                lost.append(agent.id)
            cycle = s.current_cycle()
            if cycle is not None:
                cycle.completed_at = utc_now_iso()
            s.status = "active"
            s.tmux_session = tmux_session or s.tmux_session
            s.tmux_window = tmux_window
            return lost

        lost = await self.store.mutate(workdir, session_id, _apply)
        if stale_orchestrator and stale_orchestrator in live:
            await self.driver.kill_pane(stale_orchestrator)

        self.index.register(session_id, workdir)
        rt = self.sessions.rebuild(self.store.read(workdir, session_id))
        rt.window = tmux_window
        self.monitor.track(session_id)
        await self.orchestrator.spawn(session_id, workdir, tmux_window, message or "")
        logger.info(
            "session resumed (%d agent(s) marked lost)",
            len(lost),
            extra={"session_id": session_id, "op": "resume"},
        )
        return self.store.read(workdir, session_id)

    async def kill(self, session_id: str) -> int:
        workdir = self.workdir_for(session_id)
        session = self.store.read(workdir, session_id)
        orch_pane = self.orchestrator.pane_for(session)
        rt = self.sessions.get(session_id)
        window = (rt.window if rt is not None else None) or session.tmux_window

        killed = await self.store.kill_session(workdir, session_id, reason=KILL_REASON)
        self.monitor.untrack(session_id)
        self._respawning.discard(session_id)
        self.sessions.drop(session_id)

        for agent in session.agents:
            if agent.worktree_path and agent.merge_status == "pending":
                try:
                    await asyncio.to_thread(discard_worktree, workdir, agent.worktree_path, agent.branch_name)
                except Exception:
                    logger.exception("worktree cleanup failed for %s", agent.id, extra={"session_id": session_id})
        if orch_pane:
            await self.driver.kill_pane(orch_pane)
        if window:
            await self.driver.kill_window(window)
        logger.info("session killed (%d running agent(s))", len(killed), extra={"session_id": session_id, "op": "kill"})
        return len(killed)

    # ------------------------------------------------------------------
    # respawn
    # ------------------------------------------------------------------

    async def request_respawn(self, session_id: str) -> bool:
        """Schedule the next orchestrator cycle; returns True if one was scheduled.

        A trigger for a session that already has one in flight is dropped.
        Failures are logged and never propagate to the triggering request.
        """
        if session_id in self._respawning:
            logger.debug("respawn already in flight", extra={"session_id": session_id})
            return False
        self._respawning.add(session_id)
        scheduled = False
        try:
            workdir = self.workdir_for(session_id)
            session = self.store.read(workdir, session_id)
            if session.status != "active" or session.current_cycle() is not None:
                return False
            if any(a.worktree_path and a.merge_status == "pending" for a in session.agents):
                await self._merge_pending(session_id, workdir, session.agents)
            delay = self._settings_loader(workdir).respawn_delay_seconds
            self._spawn_task(self._deferred_respawn(session_id, workdir, delay))
            scheduled = True
            return True
        except Exception:
            logger.exception("respawn scheduling failed", extra={"session_id": session_id, "op": "respawn"})
            return False
        finally:
            if not scheduled:
                self._respawning.discard(session_id)

    async def _merge_pending(self, session_id: str, workdir: str, agents: List[Agent]) -> None:
        results = await asyncio.to_thread(merge_worktrees, workdir, agents)
        for r in results:
            await self.store.update_agent(
                workdir, session_id, r.agent_id, merge_status=r.status, merge_details=r.details
            )
            logger.info("worktree %s: %s", r.status, r.name, extra={"session_id": session_id, "agent_id": r.agent_id})

    async def _deferred_respawn(self, session_id: str, workdir: str, delay: float) -> None:
        try:
            # Let the previous orchestrator process exit first.
            await asyncio.sleep(delay)
            session = self.store.read(workdir, session_id)
            if session.status != "active" or session.current_cycle() is not None:
                logger.info("respawn skipped (%s)", session.status, extra={"session_id": session_id})
                return
            await self.orchestrator.spawn(session_id, workdir, self._window_for(session))
        except Exception:
            logger.exception("orchestrator respawn failed", extra={"session_id": session_id, "op": "respawn"})
        finally:
            self._respawning.discard(session_id)

    def _spawn_task(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for deferred respawns and background bootstraps."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.agents.drain()

    # ------------------------------------------------------------------
    # request handlers
    # ------------------------------------------------------------------

    async def spawn_agent(
        self, session_id: str, agent_type: str, name: str, instruction: str, *, worktree: bool = False
    ) -> Agent:
        workdir = self.workdir_for(session_id)
        session = self.store.read(workdir, session_id)
        window = self._window_for(session)
        return await self.agents.spawn(
            session_id, workdir, agent_type, name, instruction, window, isolate=worktree
        )

    async def submit(self, session_id: str, agent_id: str, report: str) -> bool:
        workdir = self.workdir_for(session_id)
        all_done = await self.agents.submit(session_id, workdir, agent_id, report)
        if all_done:
            await self.request_respawn(session_id)
        return all_done

    async def report(self, session_id: str, agent_id: str, content: str) -> Dict[str, Any]:
        report = await self.agents.report(session_id, self.workdir_for(session_id), agent_id, content)
        return report.model_dump()

    async def yield_(self, session_id: str, next_prompt: Optional[str] = None) -> bool:
        idle = await self.orchestrator.yield_(session_id, self.workdir_for(session_id), next_prompt)
        if idle:
            await self.request_respawn(session_id)
        return idle

    async def complete(self, session_id: str, report: str) -> Session:
        workdir = self.workdir_for(session_id)
        session = await self.orchestrator.complete(session_id, workdir, report)
        self.monitor.untrack(session_id)
        self.sessions.drop(session_id)
        return session

    async def handle_pane_exited(self, pane_id: str) -> Dict[str, Any]:
        entry = self.sessions.lookup_pane(pane_id)
        if entry is None:
            return {"ignored": True}
        workdir = self.workdir_for(entry.session_id)
        if entry.role == "agent" and entry.agent_id:
            updated = await self.agents.kill(entry.session_id, workdir, entry.agent_id, "pane closed", status="lost")
            if updated is not None and updated.all_agents_done():
                await self.request_respawn(entry.session_id)
            return {"sessionId": entry.session_id, "agentId": entry.agent_id}
        status = await self.orchestrator.close_vanished(entry.session_id, workdir)
        return {"sessionId": entry.session_id, "role": "orchestrator", "status": status}

    async def add_task(self, session_id: str, description: str, status: Optional[str] = None) -> Task:
        return await self.store.add_task(self.workdir_for(session_id), session_id, description, status)

    async def update_task(
        self,
        session_id: str,
        task_id: str,
        *,
        status: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Task:
        return await self.store.update_task(
            self.workdir_for(session_id), session_id, task_id, status=status, description=description
        )

    def list_tasks(self, session_id: str) -> List[Task]:
        return list(self.load(session_id).tasks)

    async def register_provider_session(self, session_id: str, agent_id: str, provider_session_id: str) -> Agent:
        workdir = self.workdir_for(session_id)
        return await self.agents.register_provider_session(session_id, workdir, agent_id, provider_session_id)

    def list_sessions(self, cwd: str = "", *, all_workdirs: bool = False) -> List[Session]:
        if all_workdirs:
            workdirs = self.index.workdirs()
        else:
            workdirs = [_checked_workdir(cwd)] if cwd else []
        out: List[Session] = []
        for workdir in workdirs:
            out.extend(self.store.list_sessions(workdir))
        out.sort(key=lambda s: s.created_at, reverse=True)
        return out

    def status(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        if session_id:
            return {"session": self.load(session_id).model_dump(mode="json")}
        return {
            "tracked": self.monitor.tracked(),
            "respawning": sorted(self._respawning),
            "sessions": [rt.session_id for rt in self.sessions.runtimes()],
        }

    # ------------------------------------------------------------------
    # restart recovery / retention
    # ------------------------------------------------------------------

    async def recover(self) -> None:
        """Rebuild in-memory indices from persisted sessions after a restart."""
        for session_id in self.index.session_ids():
            workdir = self.index.workdir_for(session_id)
            if not workdir:
                continue
            try:
                await self._recover_one(session_id, workdir)
            except NotFoundError:
                logger.warning("registry entry without session document: %s", session_id)
                self.index.forget(session_id)
            except Exception:
                logger.exception("recovery failed", extra={"session_id": session_id, "op": "recover"})

    async def _recover_one(self, session_id: str, workdir: str) -> None:
        session = self.store.read(workdir, session_id)
        if session.status == "completed":
            return
        window = session.tmux_window
        if window and await self.driver.window_exists(window):
            self.sessions.rebuild(session)
            self.monitor.track(session_id)
            logger.info("session reattached to %s", window, extra={"session_id": session_id, "op": "recover"})
            return
        # Window gone: keep the counters, but nothing can run any more.
        self.sessions.ensure(session_id, workdir).sync_counters(session)
        if session.status == "active":
            await self.store.pause_session(workdir, session_id)
            logger.info("session paused: window vanished", extra={"session_id": session_id, "op": "recover"})

    def prune(self) -> List[str]:
        pruned: List[str] = []
        for workdir in self.index.workdirs():
            retention = self._settings_loader(workdir).retention_seconds
            for session_id in self.store.prune_completed(workdir, retention_seconds=retention):
                self.index.forget(session_id)
                self.sessions.drop(session_id)
                pruned.append(session_id)
        return pruned

    async def shutdown(self) -> None:
        await self.monitor.stop()
        for task in list(self._pending):
            task.cancel()
        await self.drain()


def _checked_workdir(cwd: str) -> str:
    path = Path(str(cwd or "")).expanduser()
    if not str(cwd or "").strip() or not path.is_dir():
        raise InvalidValueError(f"working directory does not exist: {cwd}")
    return session_workdir(path)
