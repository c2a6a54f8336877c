from __future__ import annotations

from .ipc import (
    REQUEST_TYPES,
    CompleteRequest,
    DaemonResponse,
    KillRequest,
    ListRequest,
    PaneExitedRequest,
    PingRequest,
    RegisterRequest,
    ReportRequest,
    Request,
    ResumeRequest,
    ShutdownRequest,
    SpawnRequest,
    StartRequest,
    StatusRequest,
    SubmitRequest,
    TasksAddRequest,
    TasksListRequest,
    TasksUpdateRequest,
    UnknownRequestType,
    YieldRequest,
    error,
    ok,
    parse_request,
)
from .session import (
    ORCHESTRATOR_AGENT_ID,
    SESSION_TRANSITIONS,
    TASK_STATUSES,
    TERMINAL_AGENT_STATUSES,
    Agent,
    AgentReport,
    AgentStatus,
    MergeStatus,
    OrchestratorCycle,
    Session,
    SessionStatus,
    Task,
    format_agent_id,
    parse_agent_counter,
)

__all__ = [
    "Agent",
    "AgentReport",
    "AgentStatus",
    "CompleteRequest",
    "DaemonResponse",
    "KillRequest",
    "ListRequest",
    "MergeStatus",
    "ORCHESTRATOR_AGENT_ID",
    "OrchestratorCycle",
    "PaneExitedRequest",
    "PingRequest",
    "REQUEST_TYPES",
    "RegisterRequest",
    "ReportRequest",
    "Request",
    "ResumeRequest",
    "SESSION_TRANSITIONS",
    "Session",
    "SessionStatus",
    "ShutdownRequest",
    "SpawnRequest",
    "StartRequest",
    "StatusRequest",
    "SubmitRequest",
    "TASK_STATUSES",
    "TERMINAL_AGENT_STATUSES",
    "Task",
    "TasksAddRequest",
    "TasksListRequest",
    "TasksUpdateRequest",
    "UnknownRequestType",
    "YieldRequest",
    "error",
    "format_agent_id",
    "ok",
    "parse_agent_counter",
    "parse_request",
]
