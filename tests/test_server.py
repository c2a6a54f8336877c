import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from _support import FakeDriver, fast_settings, with_home


class TestRequestHandling(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.home, self.workdir, cleanup = with_home()
        self.addCleanup(cleanup)
        self.driver = FakeDriver()
        self.driver.add_window("@1")

    async def asyncSetUp(self) -> None:
        from baton.daemon.coordinator import SessionCoordinator

        self.coord = SessionCoordinator(self.driver, settings_loader=fast_settings)
        self.addAsyncCleanup(self.coord.shutdown)

    async def _call(self, obj) -> dict:
        from baton.daemon.server import handle_line

        line = obj if isinstance(obj, bytes) else json.dumps(obj).encode("utf-8")
        resp, _ = await handle_line(self.coord, line)
        return resp.to_wire()

    async def test_invalid_json_is_an_error_response(self) -> None:
        resp = await self._call(b"{not json")
        self.assertFalse(resp["ok"])
        self.assertEqual(resp["code"], "invalid_json")

    async def test_unknown_and_missing_type(self) -> None:
        resp = await self._call({"type": "frobnicate"})
        self.assertEqual((resp["ok"], resp["code"]), (False, "unknown_type"))
        self.assertIn("frobnicate", resp["error"])
        resp = await self._call({"sessionId": "x"})
        self.assertEqual(resp["code"], "unknown_type")
        resp = await self._call([1, 2])
        self.assertEqual(resp["code"], "invalid_request")

    async def test_missing_fields_are_invalid_requests(self) -> None:
        resp = await self._call({"type": "spawn", "sessionId": "s"})
        self.assertEqual((resp["ok"], resp["code"]), (False, "invalid_request"))

    async def test_not_found_carries_code(self) -> None:
        resp = await self._call({"type": "status", "sessionId": "missing"})
        self.assertEqual(resp, {"ok": False, "error": "session not found: missing", "code": "session_not_found"})

    async def test_full_round_trip_over_handlers(self) -> None:
        resp = await self._call(
            {"type": "start", "task": "t", "cwd": self.workdir, "tmuxSession": "main", "tmuxWindow": "@1"}
        )
        self.assertTrue(resp["ok"], resp)
        sid = resp["data"]["sessionId"]

        resp = await self._call(
            {"type": "spawn", "sessionId": sid, "agentType": "", "name": "w", "instruction": "work"}
        )
        agent_id = resp["data"]["agentId"]
        self.assertEqual(agent_id, "agent-001")

        resp = await self._call({"type": "report", "sessionId": sid, "agentId": agent_id, "content": "half way"})
        self.assertEqual(resp["data"]["report"]["summary"], "half way")

        resp = await self._call({"type": "tasks-add", "sessionId": sid, "description": "x"})
        self.assertEqual(resp["data"]["taskId"], "t1")
        resp = await self._call({"type": "tasks-update", "sessionId": sid, "taskId": "t1", "status": "bogus"})
        self.assertEqual(resp["code"], "invalid_value")

        resp = await self._call({"type": "yield", "sessionId": sid, "nextPrompt": "next"})
        self.assertEqual(resp["data"], {"respawn": False})
        resp = await self._call({"type": "submit", "sessionId": sid, "agentId": agent_id, "report": "done"})
        self.assertEqual(resp["data"], {"allDone": True})
        await self.coord.drain()

        resp = await self._call({"type": "status", "sessionId": sid})
        self.assertEqual(len(resp["data"]["session"]["orchestrator_cycles"]), 2)
        resp = await self._call({"type": "list", "cwd": self.workdir})
        self.assertEqual([s["id"] for s in resp["data"]["sessions"]], [sid])

        resp = await self._call({"type": "pane-exited", "paneId": "%404"})
        self.assertEqual(resp, {"ok": True, "data": {"ignored": True}})

        resp = await self._call({"type": "kill", "sessionId": sid})
        self.assertEqual(resp["data"], {"killedAgents": 0})
        resp = await self._call({"type": "tasks-add", "sessionId": sid, "description": "late"})
        self.assertEqual(resp["code"], "session_completed")

    async def test_shutdown_requests_exit(self) -> None:
        from baton.daemon.server import handle_line

        resp, should_exit = await handle_line(self.coord, b'{"type":"shutdown"}')
        self.assertTrue(resp.ok)
        self.assertTrue(should_exit)


class TestDaemonServer(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.home, self.workdir, cleanup = with_home()
        self.addCleanup(cleanup)
        # Unix socket paths are length-limited; keep the daemon dir short.
        sock_ctx = tempfile.TemporaryDirectory(prefix="bt")
        self.sock_home = Path(sock_ctx.__enter__())
        self.addCleanup(sock_ctx.__exit__, None, None, None)

    async def test_serves_many_requests_per_connection_and_shuts_down(self) -> None:
        from baton.daemon.coordinator import SessionCoordinator
        from baton.daemon.server import DaemonPaths, DaemonServer, call_daemon

        paths = DaemonPaths(home=self.sock_home)
        server = DaemonServer(SessionCoordinator(FakeDriver(), settings_loader=fast_settings), paths)
        task = asyncio.get_running_loop().create_task(server.serve(install_signals=False))
        for _ in range(200):
            if paths.pid_path.exists():
                break
            await asyncio.sleep(0.01)
        self.assertTrue(paths.sock_path.exists())

        reader, writer = await asyncio.open_unix_connection(str(paths.sock_path))
        writer.write(b"garbage\n")
        writer.write(b'{"type":"nope"}\n')
        writer.write(b'{"type":"ping"}\n')
        await writer.drain()
        replies = [json.loads(await reader.readline()) for _ in range(3)]
        writer.close()
        await writer.wait_closed()
        self.assertEqual([r["ok"] for r in replies], [False, False, True])
        self.assertEqual(replies[0]["code"], "invalid_json")
        self.assertEqual(replies[1]["code"], "unknown_type")
        self.assertIn("pid", replies[2]["data"])

        resp = await asyncio.to_thread(call_daemon, {"type": "ping"}, paths=paths, timeout_s=5.0)
        self.assertTrue(resp["ok"])
        resp = await asyncio.to_thread(call_daemon, {"type": "shutdown"}, paths=paths, timeout_s=5.0)
        self.assertEqual(resp, {"ok": True, "data": {"stopping": True}})

        await asyncio.wait_for(task, timeout=5.0)
        self.assertFalse(paths.sock_path.exists())
        self.assertFalse(paths.pid_path.exists())

    async def test_client_reports_unavailable_daemon(self) -> None:
        from baton.daemon.server import DaemonPaths, call_daemon

        resp = await asyncio.to_thread(call_daemon, {"type": "ping"}, paths=DaemonPaths(home=self.sock_home))
        self.assertEqual(resp["code"], "daemon_unavailable")


if __name__ == "__main__":
    unittest.main()
