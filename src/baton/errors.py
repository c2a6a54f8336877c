"""Error taxonomy shared by the daemon components.

Every error carries a stable ``code`` so the IPC layer (and callers) can
branch on the kind of failure without matching message text.
"""
from __future__ import annotations

from typing import Optional


class BatonError(Exception):
    code = "error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class NotFoundError(BatonError):
    """An unknown session, agent, task, or pane id."""

    def __init__(self, kind: str, ident: str, *, scope: str = ""):
        self.kind = kind
        self.ident = ident
        where = f" in session {scope}" if scope else ""
        super().__init__(f"{kind} not found: {ident}{where}", code=f"{kind}_not_found")


class InvalidTransitionError(BatonError):
    code = "invalid_transition"


class InvalidValueError(BatonError):
    code = "invalid_value"


class SessionCompletedError(BatonError):
    code = "session_completed"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session already completed: {session_id}")


class DriverError(BatonError):
    """The process driver could not perform an operation the caller depends on."""

    code = "driver_error"


class DaemonRunningError(BatonError):
    code = "daemon_running"

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"daemon already running (pid {pid})")
