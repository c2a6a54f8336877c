"""Prompt artifacts handed to agent and orchestrator processes."""
from __future__ import annotations

import shlex
from pathlib import Path
from typing import List

from ..contracts.v1 import Agent, Session
from ..paths import context_dir, logs_path, orchestrator_prompt_path, plan_path, worktree_config_path

DEFAULT_CONTINUATION = "Review the current session and delegate the next cycle of work."

SUMMARY_MAX_CHARS = 120

DEFAULT_ORCHESTRATOR_PROMPT = """# Orchestrator

You coordinate a team of agents working on one task. Each cycle you:

1. Read the session state below (plan, logs, agent reports).
2. Decide what must happen next and update the plan.
3. Delegate focused sub-tasks with `baton spawn`, then `baton yield`.
   You are restarted automatically once every agent has finished.
4. When the task is done, run `baton complete` with a final report.

Never do the agents' work yourself; keep each instruction self-contained.
"""

AGENT_SUFFIX_TEMPLATE = """# Baton agent
Session: {session_id}
Agent: {agent_id}

Your task:
{instruction}

Report progress with `baton report`. When finished, run `baton submit` with
a final report; your pane closes once the report is recorded.
"""


def load_orchestrator_prompt(workdir: str) -> str:
    path = orchestrator_prompt_path(workdir)
    if path.is_file():
        return path.read_text(encoding="utf-8")
    return DEFAULT_ORCHESTRATOR_PROMPT


def render_agent_prompt(session_id: str, agent_id: str, instruction: str, *, type_body: str = "") -> str:
    text = AGENT_SUFFIX_TEMPLATE.format(session_id=session_id, agent_id=agent_id, instruction=instruction)
    if type_body:
        text = type_body.rstrip() + "\n\n" + text
    return text


def summarize(content: str, limit: int = SUMMARY_MAX_CHARS) -> str:
    for line in (content or "").splitlines():
        s = line.strip()
        if s:
            return s if len(s) <= limit else s[: limit - 3].rstrip() + "..."
    return ""


def _agent_lines(agent: Agent) -> List[str]:
    lines = [f"- {agent.id} ({agent.name}): {agent.status}, {len(agent.reports)} report(s)"]
    if agent.killed_reason and agent.status != "completed":
        lines[0] += f" [{agent.killed_reason}]"
    update_no = 0
    for report in agent.reports:
        if report.kind == "final":
            label = "[final]"
        else:
            update_no += 1
            label = f"[update {update_no:03d}]"
        lines.append(f'  {label} "{report.summary}" -> {report.path}')
    return lines


def _worktree_lines(agent: Agent) -> List[str]:
    status = agent.merge_status or "pending"
    if status == "conflict":
        return [
            f"- {agent.id}: CONFLICT: {agent.merge_details or 'unknown'}",
            f"  Branch: {agent.branch_name}",
            f"  Worktree: {agent.worktree_path}",
        ]
    if status == "no-changes":
        return [f"- {agent.id}: NO CHANGES (nothing committed on {agent.branch_name})"]
    return [f"- {agent.id}: {status} (branch {agent.branch_name})"]


def _file_ref(path: Path) -> str:
    return f"@{path}" if path.exists() else "(empty)"


def format_state(session: Session) -> str:
    """Render the session as the human-readable block the orchestrator starts from."""
    cwd, sid = session.cwd, session.id
    out: List[str] = [
        "<state>",
        f"session: {sid[:8]} (cycle {len(session.orchestrator_cycles) + 1})",
        f"task: {session.task}",
        f"status: {session.status}",
        "",
        "## Plan",
        _file_ref(plan_path(cwd, sid)),
        "",
        "## Logs",
        _file_ref(logs_path(cwd, sid)),
        "",
        "## Tasks",
    ]
    if session.tasks:
        out.extend(f"- {t.id} [{t.status}] {t.description}" for t in session.tasks)
    else:
        out.append("  (none)")

    out += ["", "## Agents"]
    if session.agents:
        for agent in session.agents:
            out.extend(_agent_lines(agent))
    else:
        out.append("  (none)")

    isolated = [a for a in session.agents if a.worktree_path]
    if isolated:
        out += ["", "## Worktrees"]
        for agent in isolated:
            out.extend(_worktree_lines(agent))

    out += ["", "## Previous Cycles"]
    if session.orchestrator_cycles:
        for cycle in session.orchestrator_cycles:
            spawned = ", ".join(cycle.agents_spawned) if cycle.agents_spawned else "(none)"
            out.append(f"Cycle {cycle.cycle}: spawned {spawned}")
    else:
        out.append("  (none)")

    out += ["", "## Context Files"]
    ctx = context_dir(cwd, sid)
    files = sorted(p.name for p in ctx.iterdir()) if ctx.is_dir() else []
    if files:
        out.extend(f"- {name}" for name in files)
    else:
        out.append("  (none)")

    out += ["", "## Git Worktrees"]
    if worktree_config_path(cwd).exists():
        out.append("Worktree config active. Spawn with worktree isolation when agents may edit overlapping files.")
    else:
        out.append("No worktree configuration; agents share the working tree.")
    out.append("</state>")
    return "\n".join(out)


def compose_orchestrator_message(session: Session, message: str = "") -> str:
    """State block plus the instruction for this cycle.

    Priority: explicit resume message, then the next prompt carried over by the
    most recently completed cycle, then the default continuation.
    """
    state = format_state(session)
    if message:
        return f"{state}\n\nThe user resumed this session with new instructions: {message}"
    last = session.last_completed_cycle()
    if last is not None and last.next_prompt:
        return f"{state}\n\n{last.next_prompt}"
    return f"{state}\n\n{DEFAULT_CONTINUATION}"


def build_launch_command(
    env_line: str,
    base_command: str,
    *,
    system_prompt_file: str,
    message_file: str,
    provider: str = "anthropic",
    model: str = "",
) -> str:
    """Shell line typed into a pane: environment exports, then the provider CLI.

    The OpenAI CLI has no system-prompt flag, so both files are joined into
    its single prompt argument.
    """
    model_arg = f" --model {shlex.quote(model)}" if model else ""
    sys_q, msg_q = shlex.quote(system_prompt_file), shlex.quote(message_file)
    if provider == "openai":
        cmd = f'{base_command}{model_arg} "$(cat {sys_q} {msg_q})"'
    else:
        cmd = f'{base_command}{model_arg} --append-system-prompt "$(cat {sys_q})" "$(cat {msg_q})"'
    return f"{env_line} && {cmd}" if env_line else cmd
