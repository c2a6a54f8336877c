from __future__ import annotations

import argparse
import asyncio
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

from .daemon.coordinator import SessionCoordinator
from .daemon.server import DaemonPaths, DaemonServer, call_daemon, default_paths, read_pid
from .errors import DaemonRunningError
from .kernel.settings import load_settings
from .runners.tmux import TmuxDriver
from .util.file_lock import LockUnavailableError, acquire_lockfile, release_lockfile, write_lock_owner
from .util.obslog import setup_root_json_logging


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def _wait_for_exit(pid: int, timeout_s: float) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if not _pid_alive(pid):
            return True
        time.sleep(0.1)
    return not _pid_alive(pid)


def _spawn_daemon(paths: DaemonPaths) -> int:
    paths.daemon_dir.mkdir(parents=True, exist_ok=True)
    log_f = paths.log_path.open("a", encoding="utf-8")
    env = os.environ.copy()
    env["BATON_HOME"] = str(paths.home)
    p = subprocess.Popen(
        [sys.executable, "-m", "baton.daemon_main", "run"],
        stdout=log_f,
        stderr=log_f,
        stdin=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        cwd=str(Path.cwd()),
    )
    return int(p.pid)


async def _serve(paths: DaemonPaths) -> None:
    coordinator = SessionCoordinator(TmuxDriver())
    await DaemonServer(coordinator, paths).serve()


def run_foreground(paths: DaemonPaths) -> int:
    settings = load_settings()
    setup_root_json_logging(component="batond", level=settings.log_level)
    try:
        lock = acquire_lockfile(paths.lock_path, blocking=False)
    except LockUnavailableError:
        raise DaemonRunningError(read_pid(paths)) from None
    try:
        write_lock_owner(lock, os.getpid())
        asyncio.run(_serve(paths))
    finally:
        release_lockfile(lock)
    return 0


def stop_daemon(paths: DaemonPaths, *, timeout_s: float) -> str:
    """Ask politely over IPC, then SIGTERM, then SIGKILL."""
    pid = read_pid(paths)
    resp = call_daemon({"type": "shutdown"}, paths=paths, timeout_s=timeout_s)
    if resp.get("ok"):
        if pid <= 0 or _wait_for_exit(pid, timeout_s):
            return "stopped"
    if not _pid_alive(pid):
        if pid > 0:
            paths.pid_path.unlink(missing_ok=True)
        return "not running"
    os.kill(pid, signal.SIGTERM)
    if _wait_for_exit(pid, timeout_s):
        return "stopped (SIGTERM)"
    os.kill(pid, signal.SIGKILL)
    _wait_for_exit(pid, 1.0)
    paths.pid_path.unlink(missing_ok=True)
    paths.sock_path.unlink(missing_ok=True)
    return "killed (SIGKILL)"


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="batond", description="baton session daemon")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Run daemon in foreground")
    sub.add_parser("start", help="Start daemon in background")
    sub.add_parser("stop", help="Stop daemon")
    sub.add_parser("status", help="Daemon status")

    args = parser.parse_args(argv)
    paths = default_paths()

    if args.cmd == "run":
        try:
            return run_foreground(paths)
        except DaemonRunningError as e:
            print(f"batond: {e}", file=sys.stderr)
            return 1

    if args.cmd == "start":
        resp = call_daemon({"type": "ping"}, paths=paths, timeout_s=2.0)
        if resp.get("ok"):
            print(f"batond: already running pid={resp.get('data', {}).get('pid')}")
            return 0
        pid = _spawn_daemon(paths)
        print(f"batond: started pid={pid}")
        return 0

    if args.cmd == "stop":
        timeout_s = load_settings().stop_timeout_seconds
        print(f"batond: {stop_daemon(paths, timeout_s=timeout_s)}")
        return 0

    if args.cmd == "status":
        resp = call_daemon({"type": "ping"}, paths=paths, timeout_s=2.0)
        if resp.get("ok"):
            data = resp.get("data") or {}
            print(f"batond: running pid={data.get('pid')} version={data.get('version')}")
            return 0
        print("batond: not running")
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
