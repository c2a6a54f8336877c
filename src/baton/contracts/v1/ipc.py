from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from ...errors import BatonError


class UnknownRequestType(BatonError):
    code = "unknown_type"

    def __init__(self, request_type: str):
        self.request_type = request_type
        super().__init__(f"unknown request type: {request_type or '(missing)'}")


class Request(BaseModel):
    type: str

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PingRequest(Request):
    type: Literal["ping"] = "ping"


class ShutdownRequest(Request):
    type: Literal["shutdown"] = "shutdown"


class StartRequest(Request):
    type: Literal["start"] = "start"
    task: str = Field(min_length=1)
    cwd: str = Field(min_length=1)
    tmux_session: str = Field(default="", alias="tmuxSession")
    tmux_window: str = Field(min_length=1, alias="tmuxWindow")


class SpawnRequest(Request):
    type: Literal["spawn"] = "spawn"
    session_id: str = Field(min_length=1, alias="sessionId")
    agent_type: str = Field(default="", alias="agentType")
    name: str = Field(min_length=1)
    instruction: str = Field(min_length=1)
    worktree: bool = False


class SubmitRequest(Request):
    type: Literal["submit"] = "submit"
    session_id: str = Field(min_length=1, alias="sessionId")
    agent_id: str = Field(min_length=1, alias="agentId")
    report: str


class ReportRequest(Request):
    type: Literal["report"] = "report"
    session_id: str = Field(min_length=1, alias="sessionId")
    agent_id: str = Field(min_length=1, alias="agentId")
    content: str = Field(min_length=1)


class YieldRequest(Request):
    type: Literal["yield"] = "yield"
    session_id: str = Field(min_length=1, alias="sessionId")
    next_prompt: Optional[str] = Field(default=None, alias="nextPrompt")


class CompleteRequest(Request):
    type: Literal["complete"] = "complete"
    session_id: str = Field(min_length=1, alias="sessionId")
    report: str


class StatusRequest(Request):
    type: Literal["status"] = "status"
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ListRequest(Request):
    type: Literal["list"] = "list"
    cwd: str = ""
    all: bool = False


class ResumeRequest(Request):
    type: Literal["resume"] = "resume"
    session_id: str = Field(min_length=1, alias="sessionId")
    cwd: str = Field(min_length=1)
    tmux_session: str = Field(default="", alias="tmuxSession")
    tmux_window: str = Field(min_length=1, alias="tmuxWindow")
    message: Optional[str] = None


class KillRequest(Request):
    type: Literal["kill"] = "kill"
    session_id: str = Field(min_length=1, alias="sessionId")


class PaneExitedRequest(Request):
    type: Literal["pane-exited"] = "pane-exited"
    pane_id: str = Field(min_length=1, alias="paneId")


class TasksAddRequest(Request):
    type: Literal["tasks-add"] = "tasks-add"
    session_id: str = Field(min_length=1, alias="sessionId")
    description: str = Field(min_length=1)
    status: Optional[str] = None


class TasksUpdateRequest(Request):
    type: Literal["tasks-update"] = "tasks-update"
    session_id: str = Field(min_length=1, alias="sessionId")
    task_id: str = Field(min_length=1, alias="taskId")
    status: Optional[str] = None
    description: Optional[str] = None


class TasksListRequest(Request):
    type: Literal["tasks-list"] = "tasks-list"
    session_id: str = Field(min_length=1, alias="sessionId")


class RegisterRequest(Request):
    type: Literal["register"] = "register"
    session_id: str = Field(min_length=1, alias="sessionId")
    agent_id: str = Field(min_length=1, alias="agentId")
    provider_session_id: str = Field(min_length=1, alias="providerSessionId")


REQUEST_TYPES: Dict[str, Type[Request]] = {
    "ping": PingRequest,
    "shutdown": ShutdownRequest,
    "start": StartRequest,
    "spawn": SpawnRequest,
    "submit": SubmitRequest,
    "report": ReportRequest,
    "yield": YieldRequest,
    "complete": CompleteRequest,
    "status": StatusRequest,
    "list": ListRequest,
    "resume": ResumeRequest,
    "kill": KillRequest,
    "pane-exited": PaneExitedRequest,
    "tasks-add": TasksAddRequest,
    "tasks-update": TasksUpdateRequest,
    "tasks-list": TasksListRequest,
    "register": RegisterRequest,
}


def parse_request(raw: Dict[str, Any]) -> Request:
    """Validate a decoded request line against the model for its ``type``.

    Raises UnknownRequestType for a missing/unknown discriminator and
    pydantic.ValidationError for a malformed body.
    """
    req_type = str(raw.get("type") or "").strip() if isinstance(raw, dict) else ""
    model = REQUEST_TYPES.get(req_type)
    if model is None:
        raise UnknownRequestType(req_type)
    return model.model_validate(raw)


class DaemonResponse(BaseModel):
    ok: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    code: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


def ok(data: Optional[Dict[str, Any]] = None) -> DaemonResponse:
    return DaemonResponse(ok=True, data=data)


def error(code: str, message: str) -> DaemonResponse:
    return DaemonResponse(ok=False, error=message, code=code)
