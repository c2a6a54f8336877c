"""Persistent per-session state documents.

Each session lives in ``<workdir>/.baton/sessions/<id>/state.json``. The
document is the only durable record of truth: every mutation re-reads it,
applies an in-memory change and atomically rewrites it, all while holding a
per-session ``asyncio.Lock`` so read-modify-write sequences for one session
are strictly serialized (FIFO) while different sessions proceed
independently.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from pydantic import ValidationError

from ..contracts.v1 import (
    SESSION_TRANSITIONS,
    TASK_STATUSES,
    Agent,
    AgentReport,
    OrchestratorCycle,
    Session,
    Task,
)
from ..errors import InvalidTransitionError, InvalidValueError, NotFoundError, SessionCompletedError
from ..paths import context_dir, logs_path, plan_path, prompts_dir, reports_dir, session_dir, sessions_dir, state_path
from ..util.fs import atomic_write_json, write_text
from ..util.time import age_seconds, utc_now_iso

logger = logging.getLogger("baton.state")

T = TypeVar("T")

PLAN_SEED = """---
description: >
  Living document of what still needs to happen. Keep it current as work
  lands; remove items once they are done.
---
"""

LOGS_SEED = """---
description: >
  Session memory. Record observations, decisions and findings here so the
  next cycle knows what was tried, what worked and what failed.
---
"""

CONTEXT_README = """# context/

Agents save exploration findings, architectural notes and reference material
here for use across cycles.
"""

_AGENT_FIELDS = frozenset(Agent.model_fields.keys())


class StateStore:
    """Load/store pair for session documents behind per-session locks."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    # ------------------------------------------------------------------
    # load / store
    # ------------------------------------------------------------------

    def exists(self, workdir: str, session_id: str) -> bool:
        return state_path(workdir, session_id).exists()

    def read(self, workdir: str, session_id: str) -> Session:
        path = state_path(workdir, session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError("session", session_id) from None
        try:
            return Session.model_validate_json(raw)
        except ValidationError as e:
            raise InvalidValueError(f"corrupt state document for session {session_id}: {e}") from e

    def _store(self, session: Session) -> None:
        atomic_write_json(state_path(session.cwd, session.id), session.model_dump(mode="json"))

    def create(
        self,
        session_id: str,
        task: str,
        workdir: str,
        *,
        tmux_session: Optional[str] = None,
        tmux_window: Optional[str] = None,
    ) -> Session:
        session_dir(workdir, session_id).mkdir(parents=True, exist_ok=True)
        prompts_dir(workdir, session_id).mkdir(parents=True, exist_ok=True)
        reports_dir(workdir, session_id).mkdir(parents=True, exist_ok=True)
        ctx = context_dir(workdir, session_id)
        ctx.mkdir(parents=True, exist_ok=True)

        write_text(plan_path(workdir, session_id), PLAN_SEED)
        write_text(logs_path(workdir, session_id), LOGS_SEED)
        write_text(ctx / "README.md", CONTEXT_README)

        session = Session(
            id=session_id,
            task=task,
            cwd=workdir,
            tmux_session=tmux_session or None,
            tmux_window=tmux_window or None,
        )
        self._store(session)
        logger.info("session created", extra={"session_id": session_id})
        return session

    async def mutate(
        self,
        workdir: str,
        session_id: str,
        fn: Callable[[Session], T],
    ) -> T:
        """Apply ``fn`` to a freshly loaded session and persist the result.

        ``fn`` runs synchronously while the session lock is held; if it raises,
        nothing is written and the lock is still released.
        """
        async with self._lock_for(session_id):
            session = self.read(workdir, session_id)
            if session.status == "completed":
                raise SessionCompletedError(session_id)
            result = fn(session)
            self._store(session)
            return result

    # ------------------------------------------------------------------
    # typed helpers
    # ------------------------------------------------------------------

    async def add_agent(self, workdir: str, session_id: str, agent: Agent) -> None:
        def _apply(session: Session) -> None:
            session.agents.append(agent.model_copy(deep=True))

        await self.mutate(workdir, session_id, _apply)

    async def update_agent(self, workdir: str, session_id: str, agent_id: str, **changes: Any) -> Agent:
        unknown = set(changes) - _AGENT_FIELDS
        if unknown:
            raise InvalidValueError(f"unknown agent fields: {sorted(unknown)}")

        def _apply(session: Session) -> Agent:
            agent = _require_agent(session, agent_id)
            for key, value in changes.items():
                setattr(agent, key, value)
            return agent.model_copy(deep=True)

        return await self.mutate(workdir, session_id, _apply)

    async def finish_agent(
        self,
        workdir: str,
        session_id: str,
        agent_id: str,
        status: str,
        *,
        reason: Optional[str] = None,
        report: Optional[AgentReport] = None,
    ) -> Optional[Session]:
        """Move a running agent to a terminal status.

        Returns the updated session, or None when the agent had already left
        ``running`` (terminal statuses never change again).
        """
        if status == "running":
            raise InvalidTransitionError("agents cannot be moved back to running")

        def _apply(session: Session) -> Optional[Session]:
            agent = _require_agent(session, agent_id)
            if not agent.running:
                return None
            if report is not None:
                if report.kind == "final" and agent.has_final_report():
                    raise InvalidTransitionError(f"agent {agent_id} already submitted a final report")
                agent.reports.append(report)
            agent.status = status  # type: ignore[assignment]
            agent.completed_at = utc_now_iso()
            if reason:
                agent.killed_reason = reason
            return session

        return await self.mutate(workdir, session_id, _apply)

    async def append_report(self, workdir: str, session_id: str, agent_id: str, report: AgentReport) -> None:
        if report.kind != "update":
            raise InvalidValueError("final reports are only recorded through submit")

        def _apply(session: Session) -> None:
            _require_agent(session, agent_id).reports.append(report)

        await self.mutate(workdir, session_id, _apply)

    async def add_cycle(self, workdir: str, session_id: str, *, pane_id: Optional[str]) -> OrchestratorCycle:
        def _apply(session: Session) -> OrchestratorCycle:
            cycles = session.orchestrator_cycles
            now = utc_now_iso()
            for stale in cycles:
                if stale.open:
                    stale.completed_at = now
            number = (cycles[-1].cycle + 1) if cycles else 1
            cycle = OrchestratorCycle(cycle=number, started_at=now, pane_id=pane_id)
            cycles.append(cycle)
            return cycle.model_copy(deep=True)

        return await self.mutate(workdir, session_id, _apply)

    async def complete_cycle(
        self,
        workdir: str,
        session_id: str,
        *,
        next_prompt: Optional[str] = None,
    ) -> Optional[OrchestratorCycle]:
        def _apply(session: Session) -> Optional[OrchestratorCycle]:
            cycle = session.current_cycle()
            if cycle is None:
                return None
            cycle.completed_at = utc_now_iso()
            if next_prompt:
                cycle.next_prompt = next_prompt
            return cycle.model_copy(deep=True)

        return await self.mutate(workdir, session_id, _apply)

    async def append_agent_to_last_cycle(self, workdir: str, session_id: str, agent_id: str) -> None:
        def _apply(session: Session) -> None:
            cycle = session.last_cycle()
            if cycle is not None:
                cycle.agents_spawned.append(agent_id)

        await self.mutate(workdir, session_id, _apply)

    async def update_status(
        self,
        workdir: str,
        session_id: str,
        status: str,
        *,
        completion_report: Optional[str] = None,
    ) -> Session:
        def _apply(session: Session) -> Session:
            allowed = SESSION_TRANSITIONS.get(session.status, frozenset())
            if status not in allowed:
                raise InvalidTransitionError(f"session {session_id}: cannot move from {session.status} to {status}")
            session.status = status  # type: ignore[assignment]
            if status == "completed":
                session.completed_at = utc_now_iso()
                for cycle in session.orchestrator_cycles:
                    if cycle.open:
                        cycle.completed_at = session.completed_at
            if completion_report is not None:
                session.completion_report = completion_report
            return session

        return await self.mutate(workdir, session_id, _apply)

    async def complete_session(self, workdir: str, session_id: str, report: str) -> Session:
        return await self.update_status(workdir, session_id, "completed", completion_report=report)

    async def pause_session(self, workdir: str, session_id: str) -> Session:
        """Close the open cycle and move an active session to paused."""

        def _apply(session: Session) -> Session:
            if session.status != "active":
                raise InvalidTransitionError(f"session {session_id}: cannot pause from {session.status}")
            cycle = session.current_cycle()
            if cycle is not None:
                cycle.completed_at = utc_now_iso()
            session.status = "paused"
            return session

        return await self.mutate(workdir, session_id, _apply)

    async def kill_session(self, workdir: str, session_id: str, *, reason: str) -> List[Agent]:
        """Kill every running agent and complete the session in one write.

        Returns copies of the agents that were still running.
        """

        def _apply(session: Session) -> List[Agent]:
            now = utc_now_iso()
            killed: List[Agent] = []
            for agent in session.running_agents():
                agent.status = "killed"
                agent.completed_at = now
                agent.killed_reason = reason
                killed.append(agent.model_copy(deep=True))
            for cycle in session.orchestrator_cycles:
                if cycle.open:
                    cycle.completed_at = now
            session.status = "completed"
            session.completed_at = now
            return killed

        return await self.mutate(workdir, session_id, _apply)

    async def set_tmux(self, workdir: str, session_id: str, tmux_session: str, tmux_window: str) -> None:
        def _apply(session: Session) -> None:
            session.tmux_session = tmux_session or None
            session.tmux_window = tmux_window or None

        await self.mutate(workdir, session_id, _apply)

    async def add_task(self, workdir: str, session_id: str, description: str, status: Optional[str] = None) -> Task:
        status = _checked_task_status(status) if status is not None else "pending"

        def _apply(session: Session) -> Task:
            task = Task(id=f"t{len(session.tasks) + 1}", description=description, status=status)  # type: ignore[arg-type]
            session.tasks.append(task)
            return task.model_copy()

        return await self.mutate(workdir, session_id, _apply)

    async def update_task(
        self,
        workdir: str,
        session_id: str,
        task_id: str,
        *,
        status: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Task:
        if status is not None:
            status = _checked_task_status(status)

        def _apply(session: Session) -> Task:
            task = session.find_task(task_id)
            if task is None:
                raise NotFoundError("task", task_id, scope=session_id)
            if status is not None:
                task.status = status  # type: ignore[assignment]
            if description is not None:
                task.description = description
            task.updated_at = utc_now_iso()
            return task.model_copy()

        return await self.mutate(workdir, session_id, _apply)

    # ------------------------------------------------------------------
    # listing / retention
    # ------------------------------------------------------------------

    def list_sessions(self, workdir: str) -> List[Session]:
        base = sessions_dir(workdir)
        if not base.exists():
            return []
        out: List[Session] = []
        for entry in sorted(base.iterdir()):
            if not entry.is_dir() or not (entry / "state.json").exists():
                continue
            try:
                out.append(self.read(workdir, entry.name))
            except (NotFoundError, InvalidValueError, OSError) as e:
                logger.warning("skipping unreadable session %s: %s", entry.name, e)
        out.sort(key=lambda s: s.created_at, reverse=True)
        return out

    def delete_session(self, workdir: str, session_id: str) -> None:
        path = session_dir(workdir, session_id)
        if path.exists():
            shutil.rmtree(path)
        self._locks.pop(session_id, None)

    def prune_completed(self, workdir: str, *, retention_seconds: float) -> List[str]:
        """Delete completed sessions whose completion is older than the retention window."""
        pruned: List[str] = []
        for session in self.list_sessions(workdir):
            if session.status != "completed" or not session.completed_at:
                continue
            age = age_seconds(session.completed_at)
            if age is None or age < retention_seconds:
                continue
            self.delete_session(workdir, session.id)
            pruned.append(session.id)
            logger.info("pruned completed session", extra={"session_id": session.id})
        return pruned


def _require_agent(session: Session, agent_id: str) -> Agent:
    agent = session.find_agent(agent_id)
    if agent is None:
        raise NotFoundError("agent", agent_id, scope=session.id)
    return agent


def _checked_task_status(status: str) -> str:
    s = str(status or "").strip()
    if s not in TASK_STATUSES:
        raise InvalidValueError(f"invalid task status: {s} (valid: {', '.join(sorted(TASK_STATUSES))})")
    return s


def session_workdir(path: Path) -> str:
    return str(path.expanduser().resolve())
