from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .. import __version__
from ..contracts.v1 import (
    CompleteRequest,
    DaemonResponse,
    KillRequest,
    ListRequest,
    PaneExitedRequest,
    RegisterRequest,
    ReportRequest,
    Request,
    ResumeRequest,
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
from ..errors import BatonError
from ..paths import ensure_home
from ..util.fs import atomic_write_text
from .coordinator import SessionCoordinator

logger = logging.getLogger("baton.server")

MAX_LINE_BYTES = 4_000_000
PRUNE_INTERVAL_SECONDS = 3600.0


@dataclass
class DaemonPaths:
    home: Path

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def sock_path(self) -> Path:
        return self.daemon_dir / "batond.sock"

    @property
    def pid_path(self) -> Path:
        return self.daemon_dir / "batond.pid"

    @property
    def lock_path(self) -> Path:
        return self.daemon_dir / "batond.lock"

    @property
    def log_path(self) -> Path:
        return self.daemon_dir / "batond.log"


def default_paths() -> DaemonPaths:
    return DaemonPaths(home=ensure_home())


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            s.sendall(b'{"type":"ping"}\n')
            _ = s.recv(1024)
            return True
    except OSError:
        return False


def _remove_stale_socket(sock_path: Path) -> None:
    try:
        if sock_path.exists() and not _is_socket_alive(sock_path):
            sock_path.unlink()
    except OSError as e:
        logger.warning("cannot remove stale socket %s: %s", sock_path, e)


def _write_pid(pid_path: Path) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(pid_path, str(os.getpid()) + "\n")


def read_pid(paths: Optional[DaemonPaths] = None) -> int:
    p = paths or default_paths()
    try:
        txt = p.pid_path.read_text(encoding="utf-8").strip()
        return int(txt) if txt.isdigit() else 0
    except OSError:
        return 0


async def dispatch(coord: SessionCoordinator, req: Request) -> Tuple[DaemonResponse, bool]:
    """Run one validated request. Returns the response and whether to shut down."""
    t = req.type

    if t == "ping":
        return ok({"pid": os.getpid(), "version": __version__}), False

    if t == "shutdown":
        return ok({"stopping": True}), True

    if isinstance(req, StartRequest):
        session = await coord.start(req.task, req.cwd, req.tmux_window, req.tmux_session)
        return ok({"sessionId": session.id}), False

    if isinstance(req, SpawnRequest):
        agent = await coord.spawn_agent(
            req.session_id, req.agent_type, req.name, req.instruction, worktree=req.worktree
        )
        data: Dict[str, Any] = {"agentId": agent.id}
        if agent.worktree_path:
            data["worktreePath"] = agent.worktree_path
            data["branch"] = agent.branch_name
        return ok(data), False

    if isinstance(req, SubmitRequest):
        all_done = await coord.submit(req.session_id, req.agent_id, req.report)
        return ok({"allDone": all_done}), False

    if isinstance(req, ReportRequest):
        report = await coord.report(req.session_id, req.agent_id, req.content)
        return ok({"report": report}), False

    if isinstance(req, YieldRequest):
        idle = await coord.yield_(req.session_id, req.next_prompt)
        return ok({"respawn": idle}), False

    if isinstance(req, CompleteRequest):
        session = await coord.complete(req.session_id, req.report)
        return ok({"sessionId": session.id, "status": session.status}), False

    if isinstance(req, StatusRequest):
        return ok(coord.status(req.session_id)), False

    if isinstance(req, ListRequest):
        sessions = coord.list_sessions(req.cwd, all_workdirs=req.all)
        return ok({"sessions": [s.summary() for s in sessions]}), False

    if isinstance(req, ResumeRequest):
        session = await coord.resume(
            req.session_id, req.cwd, req.tmux_window, req.tmux_session, message=req.message
        )
        return ok({"sessionId": session.id, "status": session.status}), False

    if isinstance(req, KillRequest):
        killed = await coord.kill(req.session_id)
        return ok({"killedAgents": killed}), False

    if isinstance(req, PaneExitedRequest):
        return ok(await coord.handle_pane_exited(req.pane_id)), False

    if isinstance(req, TasksAddRequest):
        task = await coord.add_task(req.session_id, req.description, req.status)
        return ok({"taskId": task.id, "task": task.model_dump()}), False

    if isinstance(req, TasksUpdateRequest):
        task = await coord.update_task(
            req.session_id, req.task_id, status=req.status, description=req.description
        )
        return ok({"task": task.model_dump()}), False

    if isinstance(req, TasksListRequest):
        return ok({"tasks": [t.model_dump() for t in coord.list_tasks(req.session_id)]}), False

    if isinstance(req, RegisterRequest):
        agent = await coord.register_provider_session(req.session_id, req.agent_id, req.provider_session_id)
        return ok({"agentId": agent.id}), False

    raise UnknownRequestType(t)


async def handle_line(coord: SessionCoordinator, line: bytes) -> Tuple[DaemonResponse, bool]:
    try:
        raw = json.loads(line.decode("utf-8", errors="replace"))
    except ValueError as e:
        return error("invalid_json", f"invalid JSON: {e}"), False
    if not isinstance(raw, dict):
        return error("invalid_request", "request must be a JSON object"), False
    try:
        req = parse_request(raw)
    except UnknownRequestType as e:
        return error(e.code, str(e)), False
    except ValidationError as e:
        return error("invalid_request", f"invalid {raw.get('type')} request: {e}"), False

    try:
        return await dispatch(coord, req)
    except BatonError as e:
        logger.info("request %s failed: %s", req.type, e, extra={"op": req.type})
        return error(e.code, str(e)), False
    except Exception as e:
        logger.exception("request %s crashed", req.type, extra={"op": req.type})
        return error("internal_error", str(e) or e.__class__.__name__), False


class DaemonServer:
    """Unix-socket front end: one NDJSON request per line, any number per connection."""

    def __init__(
        self,
        coordinator: SessionCoordinator,
        paths: DaemonPaths,
        *,
        prune_interval: float = PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self.coordinator = coordinator
        self.paths = paths
        self.prune_interval = prune_interval
        self._stop = asyncio.Event()
        self._connections: set = set()

    def request_stop(self) -> None:
        self._stop.set()

    async def _handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._connections.add(writer)
        try:
            while not self._stop.is_set():
                try:
                    line = await reader.readline()
                except (ValueError, asyncio.LimitOverrunError):
                    await self._send(writer, error("request_too_large", "request line too large"))
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                resp, should_exit = await handle_line(self.coordinator, line)
                await self._send(writer, resp)
                if should_exit:
                    self.request_stop()
                    break
        except (ConnectionResetError, BrokenPipeError):
            pass
        finally:
            self._connections.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def _send(self, writer: asyncio.StreamWriter, resp: DaemonResponse) -> None:
        writer.write((json.dumps(resp.to_wire(), ensure_ascii=False) + "\n").encode("utf-8"))
        await writer.drain()

    async def _prune_loop(self) -> None:
        while True:
            try:
                pruned = await asyncio.to_thread(self.coordinator.prune)
                if pruned:
                    logger.info("pruned %d completed session(s)", len(pruned), extra={"op": "prune"})
            except Exception:
                logger.exception("retention pass failed", extra={"op": "prune"})
            await asyncio.sleep(self.prune_interval)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread (tests); shutdown comes over IPC.
                pass

    async def serve(self, *, install_signals: bool = True) -> None:
        p = self.paths
        p.daemon_dir.mkdir(parents=True, exist_ok=True)
        _remove_stale_socket(p.sock_path)
        if p.sock_path.exists():
            p.sock_path.unlink()

        await self.coordinator.recover()
        server = await asyncio.start_unix_server(self._handle_conn, path=str(p.sock_path), limit=MAX_LINE_BYTES)
        os.chmod(p.sock_path, 0o600)
        _write_pid(p.pid_path)
        if install_signals:
            self._install_signal_handlers()

        self.coordinator.monitor.start()
        prune_task = asyncio.get_running_loop().create_task(self._prune_loop(), name="baton-prune")
        logger.info("daemon listening on %s", p.sock_path, extra={"op": "serve"})
        try:
            async with server:
                await self._stop.wait()
        finally:
            prune_task.cancel()
            try:
                await prune_task
            except asyncio.CancelledError:
                pass
            await self.coordinator.shutdown()
            for path in (p.sock_path, p.pid_path):
                try:
                    path.unlink(missing_ok=True)
                except OSError:
                    pass
            logger.info("daemon stopped", extra={"op": "serve"})


def call_daemon(req: Dict[str, Any], *, paths: Optional[DaemonPaths] = None, timeout_s: float = 60.0) -> Dict[str, Any]:
    """Blocking one-shot client used by the lifecycle commands."""
    p = paths or default_paths()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(p.sock_path))
            s.sendall((json.dumps(req, ensure_ascii=False) + "\n").encode("utf-8"))
            buf = b""
            while b"\n" not in buf:
                chunk = s.recv(65536)
                if not chunk:
                    break
                buf += chunk
        line = buf.split(b"\n", 1)[0]
        resp = DaemonResponse.model_validate(json.loads(line.decode("utf-8", errors="replace")))
        return resp.to_wire()
    except (OSError, ValueError, ValidationError):
        return error("daemon_unavailable", "daemon unavailable").to_wire()
