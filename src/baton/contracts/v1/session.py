from __future__ import annotations

import re
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso

SessionStatus = Literal["active", "paused", "completed"]
AgentStatus = Literal["running", "completed", "killed", "crashed", "lost"]
ReportKind = Literal["update", "final"]
MergeStatus = Literal["pending", "merged", "no-changes", "conflict"]
TaskStatus = Literal["draft", "pending", "in_progress", "done"]
Provider = Literal["anthropic", "openai"]

TERMINAL_AGENT_STATUSES: FrozenSet[str] = frozenset({"completed", "killed", "crashed", "lost"})
TASK_STATUSES: FrozenSet[str] = frozenset({"draft", "pending", "in_progress", "done"})

# active -> active is a re-entrant cycle; paused -> completed only happens through kill.
SESSION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "active": frozenset({"active", "paused", "completed"}),
    "paused": frozenset({"active", "completed"}),
    "completed": frozenset(),
}

ORCHESTRATOR_AGENT_ID = "orchestrator"

_AGENT_ID_RE = re.compile(r"^agent-(\d+)$")


def format_agent_id(counter: int) -> str:
    return f"agent-{counter:03d}"


def parse_agent_counter(agent_id: str) -> int:
    m = _AGENT_ID_RE.match(str(agent_id or "").strip())
    return int(m.group(1)) if m else 0


class AgentReport(BaseModel):
    kind: ReportKind
    path: str
    summary: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")


class Agent(BaseModel):
    id: str
    name: str
    agent_type: str = ""
    provider: Provider = "anthropic"
    color: str = ""
    instruction: str = ""
    status: AgentStatus = "running"
    spawned_at: str = Field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    reports: List[AgentReport] = Field(default_factory=list)
    pane_id: str = ""
    killed_reason: Optional[str] = None
    provider_session_id: Optional[str] = None
    worktree_path: Optional[str] = None
    branch_name: Optional[str] = None
    merge_status: Optional[MergeStatus] = None
    merge_details: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def running(self) -> bool:
        return self.status == "running"

    def has_final_report(self) -> bool:
        return any(r.kind == "final" for r in self.reports)


class OrchestratorCycle(BaseModel):
    cycle: int
    started_at: str = Field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    agents_spawned: List[str] = Field(default_factory=list)
    pane_id: Optional[str] = None
    next_prompt: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def open(self) -> bool:
        return self.completed_at is None


class Task(BaseModel):
    id: str
    description: str
    status: TaskStatus = "pending"
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")


class Session(BaseModel):
    v: int = 1
    id: str
    task: str
    cwd: str
    status: SessionStatus = "active"
    created_at: str = Field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    completion_report: Optional[str] = None
    agents: List[Agent] = Field(default_factory=list)
    orchestrator_cycles: List[OrchestratorCycle] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    tmux_session: Optional[str] = None
    tmux_window: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def find_agent(self, agent_id: str) -> Optional[Agent]:
        # Newest entry wins if an id was ever duplicated.
        for agent in reversed(self.agents):
            if agent.id == agent_id:
                return agent
        return None

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def running_agents(self) -> List[Agent]:
        return [a for a in self.agents if a.running]

    def all_agents_done(self) -> bool:
        """True once the session has agents and none of them is still running.

        Session-wide on purpose: agents spawned by other agents gate the
        hand-back exactly like the orchestrator's own.
        """
        return bool(self.agents) and not self.running_agents()

    def current_cycle(self) -> Optional[OrchestratorCycle]:
        if not self.orchestrator_cycles:
            return None
        last = self.orchestrator_cycles[-1]
        return last if last.open else None

    def last_cycle(self) -> Optional[OrchestratorCycle]:
        return self.orchestrator_cycles[-1] if self.orchestrator_cycles else None

    def last_completed_cycle(self) -> Optional[OrchestratorCycle]:
        for cycle in reversed(self.orchestrator_cycles):
            if cycle.completed_at:
                return cycle
        return None

    def max_agent_counter(self) -> int:
        return max((parse_agent_counter(a.id) for a in self.agents), default=0)

    def summary(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "task": self.task,
            "status": self.status,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "agentCount": len(self.agents),
            "cwd": self.cwd,
        }
