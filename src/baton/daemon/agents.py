"""Agent lifecycle: spawn, progress reports, final submit, kill."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Set

from ..contracts.v1 import Agent, AgentReport, Session
from ..errors import InvalidTransitionError, NotFoundError
from ..kernel.agent_types import detect_provider, resolve_agent_type
from ..kernel.prompts import build_launch_command, render_agent_prompt, summarize
from ..kernel.settings import Settings, load_settings, load_worktree_config
from ..kernel.state import StateStore
from ..kernel.worktree import WorktreeInfo, bootstrap_worktree, create_worktree, discard_worktree
from ..paths import prompts_dir, reports_dir
from ..runners.base import ProcessDriver
from ..runners.tmux import env_prefix
from ..util.fs import write_text
from .registry import SessionRegistry

logger = logging.getLogger("baton.agents")


class AgentController:
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
        self._background: Set[asyncio.Task] = set()

    async def spawn(
        self,
        session_id: str,
        workdir: str,
        agent_type: str,
        name: str,
        instruction: str,
        window: str,
        *,
        isolate: bool = False,
    ) -> Agent:
        session = self._store.read(workdir, session_id)
        if session.status != "active":
            raise InvalidTransitionError(f"session {session_id} is {session.status}; cannot spawn agents")

        # Counter and palette slot are taken before the first await so that
        # concurrent spawns in one session always get distinct ids.
        runtime = self._registry.ensure(session_id, workdir)
        if runtime.agent_counter < session.max_agent_counter():
            runtime.sync_counters(session)
        agent_id = runtime.next_agent_id()
        color = runtime.next_color()

        try:
            settings = self._settings_loader(workdir)
            atype = resolve_agent_type(agent_type, workdir)
            if atype.color:
                color = atype.color
            provider = detect_provider(atype.model, settings.providers)
            log_extra = {"session_id": session_id, "agent_id": agent_id, "op": "spawn"}

            worktree: Optional[WorktreeInfo] = None
            cwd = workdir
            if isolate:
                worktree = await asyncio.to_thread(create_worktree, workdir, session_id, agent_id)
                cwd = worktree.path

            try:
                pane_id = await self._driver.create_pane(window, cwd)
            except BaseException:
                if worktree is not None:
                    await asyncio.to_thread(discard_worktree, workdir, worktree.path, worktree.branch)
                raise

            await self._driver.set_pane_title(pane_id, f"{agent_id}: {name}")
            await self._driver.set_pane_style(pane_id, color)
            await self._driver.select_layout(window)

            pdir = prompts_dir(workdir, session_id)
            system_file = write_text(
                pdir / f"{agent_id}-system.md",
                render_agent_prompt(session_id, agent_id, instruction, type_body=atype.body),
            )
            instruction_file = write_text(pdir / f"{agent_id}-instruction.md", instruction)

            agent = Agent(
                id=agent_id,
                name=name,
                agent_type=atype.name,
                provider=provider,  # type: ignore[arg-type]
                color=color,
                instruction=instruction,
                pane_id=pane_id,
                worktree_path=worktree.path if worktree else None,
                branch_name=worktree.branch if worktree else None,
                merge_status="pending" if worktree else None,
            )
            # The record exists before the command runs: a crash in between still
            # leaves an agent that recovery can demote to lost.
            try:
                await self._store.add_agent(workdir, session_id, agent)
            except BaseException:
                await self._driver.kill_pane(pane_id)
                if worktree is not None:
                    await asyncio.to_thread(discard_worktree, workdir, worktree.path, worktree.branch)
                raise
        except BaseException:
            runtime.release_agent_id(agent_id)
            raise
        await self._store.append_agent_to_last_cycle(workdir, session_id, agent_id)
        self._registry.register_pane(pane_id, session_id, "agent", agent_id)

        env_line = env_prefix({"BATON_SESSION_ID": session_id, "BATON_AGENT_ID": agent_id})
        command = build_launch_command(
            env_line,
            settings.command_for(provider),
            system_prompt_file=str(system_file),
            message_file=str(instruction_file),
            provider=provider,
            model=atype.model,
        )
        await self._driver.send_keys(pane_id, command)
        logger.info("agent spawned: %s (%s) in %s", agent_id, name, pane_id, extra=log_extra)

        if worktree is not None:
            config = load_worktree_config(workdir)
            if config is not None:
                self._schedule(self._bootstrap(workdir, worktree.path, config, log_extra))
        return agent

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _bootstrap(self, workdir: str, path: str, config, log_extra) -> None:
        try:
            await asyncio.to_thread(bootstrap_worktree, workdir, path, config)
            logger.info("worktree bootstrapped: %s", path, extra=log_extra)
        except Exception:
            logger.exception("worktree bootstrap failed: %s", path, extra=log_extra)

    async def drain(self) -> None:
        """Wait for background bootstrap work; used at shutdown and in tests."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def report(self, session_id: str, workdir: str, agent_id: str, content: str) -> AgentReport:
        session = self._store.read(workdir, session_id)
        agent = _require_agent(session, agent_id)
        n = sum(1 for r in agent.reports if r.kind == "update") + 1
        rdir = reports_dir(workdir, session_id)
        path = rdir / f"{agent_id}-update-{n:03d}.md"
        while path.exists():
            n += 1
            path = rdir / f"{agent_id}-update-{n:03d}.md"
        write_text(path, content)

        report = AgentReport(kind="update", path=str(path), summary=summarize(content))
        await self._store.append_report(workdir, session_id, agent_id, report)
        logger.info("agent report: %s", report.summary, extra={"session_id": session_id, "agent_id": agent_id})
        return report

    async def submit(self, session_id: str, workdir: str, agent_id: str, content: str) -> bool:
        """Record the final report, finish the agent and close its pane.

        Returns whether every agent in the session is now done.
        """
        session = self._store.read(workdir, session_id)
        agent = _require_agent(session, agent_id)
        if not agent.running:
            raise InvalidTransitionError(f"agent {agent_id} is {agent.status}; cannot submit")

        path = reports_dir(workdir, session_id) / f"{agent_id}-final.md"
        write_text(path, content)
        report = AgentReport(kind="final", path=str(path), summary=summarize(content))

        updated = await self._store.finish_agent(workdir, session_id, agent_id, "completed", report=report)
        if updated is None:
            raise InvalidTransitionError(f"agent {agent_id} is no longer running; cannot submit")

        if agent.pane_id:
            self._registry.unregister_pane(agent.pane_id)
            await self._driver.kill_pane(agent.pane_id)
        logger.info("agent submitted", extra={"session_id": session_id, "agent_id": agent_id, "op": "submit"})
        return updated.all_agents_done()

    async def kill(
        self,
        session_id: str,
        workdir: str,
        agent_id: str,
        reason: str,
        *,
        status: str = "killed",
    ) -> Optional[Session]:
        """Move a running agent to a terminal status; the pane is left to the caller.

        Returns the updated session, or None when the agent was not running.
        """
        updated = await self._store.finish_agent(workdir, session_id, agent_id, status, reason=reason)
        self._registry.unregister_agent_pane(session_id, agent_id)
        if updated is not None:
            logger.info(
                "agent %s: %s",
                status,
                reason,
                extra={"session_id": session_id, "agent_id": agent_id, "op": "kill"},
            )
        return updated

    async def register_provider_session(
        self, session_id: str, workdir: str, agent_id: str, provider_session_id: str
    ) -> Agent:
        return await self._store.update_agent(
            workdir, session_id, agent_id, provider_session_id=provider_session_id
        )


def _require_agent(session: Session, agent_id: str) -> Agent:
    agent = session.find_agent(agent_id)
    if agent is None:
        raise NotFoundError("agent", agent_id, scope=session.id)
    return agent

