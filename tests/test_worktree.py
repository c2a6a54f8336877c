import os
import shutil
import tempfile
import unittest
from pathlib import Path

from _support import FakeDriver, fast_settings, with_home

_GIT_ENV = {
    "GIT_AUTHOR_NAME": "baton-test",
    "GIT_AUTHOR_EMAIL": "baton@example.invalid",
    "GIT_COMMITTER_NAME": "baton-test",
    "GIT_COMMITTER_EMAIL": "baton@example.invalid",
}


@unittest.skipUnless(shutil.which("git"), "git is not installed")
class _GitCase(unittest.TestCase):
    def setUp(self) -> None:
        self.home, self.workdir, cleanup = with_home()
        self.addCleanup(cleanup)
        old = {k: os.environ.get(k) for k in _GIT_ENV}
        os.environ.update(_GIT_ENV)

        def restore() -> None:
            for k, v in old.items():
                if v is None:
                    os.environ.pop(k, None)
                else:
                    os.environ[k] = v

        self.addCleanup(restore)
        self._git("init", "-q")
        self._git("checkout", "-q", "-b", "main")
        Path(self.workdir, "app.txt").write_text("line 1\n", encoding="utf-8")
        self._git("add", "app.txt")
        self._git("commit", "-q", "-m", "init")

    def _git(self, *args: str, cwd: str = "") -> str:
        from baton.kernel.git import run_git

        code, out, err = run_git(list(args), cwd=cwd or self.workdir)
        self.assertEqual(code, 0, f"git {' '.join(args)}: {err}")
        return out

    def _commit_in(self, path: str, name: str, content: str) -> None:
        Path(path, name).write_text(content, encoding="utf-8")
        self._git("add", name, cwd=path)
        self._git("commit", "-q", "-m", f"edit {name}", cwd=path)

    def _pending_agent(self, agent_id: str):
        from baton.contracts.v1 import Agent
        from baton.kernel.worktree import create_worktree

        info = create_worktree(self.workdir, "0123456789abcdef", agent_id)
        return Agent(
            id=agent_id,
            name=agent_id,
            worktree_path=info.path,
            branch_name=info.branch,
            merge_status="pending",
        )

    def _branches(self):
        return self._git("branch", "--format=%(refname:short)").splitlines()


class TestWorktreeManager(_GitCase):
    def test_create_uses_session_scoped_branch_outside_repo(self) -> None:
        agent = self._pending_agent("agent-001")
        self.assertEqual(agent.branch_name, "baton/01234567/agent-001")
        self.assertTrue(Path(agent.worktree_path, "app.txt").exists())
        self.assertFalse(str(agent.worktree_path).startswith(self.workdir))
        self.assertTrue(str(agent.worktree_path).startswith(os.path.realpath(self.home)))

    def test_create_replaces_leftovers(self) -> None:
        from baton.kernel.worktree import create_worktree

        first = self._pending_agent("agent-001")
        Path(first.worktree_path, "stray.txt").write_text("x", encoding="utf-8")
        again = create_worktree(self.workdir, "0123456789abcdef", "agent-001")
        self.assertEqual(again.path, first.worktree_path)
        self.assertFalse(Path(again.path, "stray.txt").exists())

    def test_merge_without_commits_is_no_changes(self) -> None:
        from baton.kernel.worktree import merge_worktrees

        agent = self._pending_agent("agent-001")
        results = merge_worktrees(self.workdir, [agent])
        self.assertEqual([(r.agent_id, r.status) for r in results], [("agent-001", "no-changes")])
        self.assertFalse(Path(agent.worktree_path).exists())
        self.assertNotIn(agent.branch_name, self._branches())

    def test_clean_merge_is_merged_and_cleaned_up(self) -> None:
        from baton.kernel.worktree import merge_worktrees

        agent = self._pending_agent("agent-001")
        self._commit_in(agent.worktree_path, "feature.txt", "new feature\n")
        results = merge_worktrees(self.workdir, [agent])
        self.assertEqual(results[0].status, "merged")
        self.assertEqual(Path(self.workdir, "feature.txt").read_text(encoding="utf-8"), "new feature\n")
        self.assertFalse(Path(agent.worktree_path).exists())
        self.assertNotIn(agent.branch_name, self._branches())

    def test_conflict_is_aborted_and_left_in_place(self) -> None:
        from baton.kernel.worktree import merge_worktrees

        agent = self._pending_agent("agent-001")
        self._commit_in(agent.worktree_path, "app.txt", "agent version\n")
        self._commit_in(self.workdir, "app.txt", "main version\n")

        results = merge_worktrees(self.workdir, [agent])
        self.assertEqual(results[0].status, "conflict")
        self.assertIn("app.txt", results[0].details or "")
        self.assertTrue(Path(agent.worktree_path).exists())
        self.assertIn(agent.branch_name, self._branches())
        # No half-merged state is left behind.
        self.assertFalse(Path(self.workdir, ".git", "MERGE_HEAD").exists())
        self.assertEqual(Path(self.workdir, "app.txt").read_text(encoding="utf-8"), "main version\n")

    def test_only_pending_agents_are_merged(self) -> None:
        from baton.kernel.worktree import merge_worktrees

        agent = self._pending_agent("agent-001")
        agent.merge_status = "conflict"
        self.assertEqual(merge_worktrees(self.workdir, [agent]), [])
        self.assertTrue(Path(agent.worktree_path).exists())

    def test_resolves_branch_from_git_not_from_record(self) -> None:
        from baton.kernel.worktree import merge_worktrees, resolve_worktree_branch

        agent = self._pending_agent("agent-001")
        self.assertEqual(resolve_worktree_branch(self.workdir, agent.worktree_path), agent.branch_name)
        self._commit_in(agent.worktree_path, "feature.txt", "x\n")
        agent.branch_name = "not-a-branch"
        self.assertEqual(merge_worktrees(self.workdir, [agent])[0].status, "merged")

    def test_discard_keeps_branch_with_unmerged_commits(self) -> None:
        from baton.kernel.worktree import discard_worktree

        agent = self._pending_agent("agent-001")
        self._commit_in(agent.worktree_path, "feature.txt", "keep me\n")
        discard_worktree(self.workdir, agent.worktree_path, agent.branch_name)
        self.assertFalse(Path(agent.worktree_path).exists())
        self.assertIn(agent.branch_name, self._branches())

    def test_snapshot_commits_tracked_state_before_merge(self) -> None:
        from baton.kernel.worktree import merge_worktrees

        state = Path(self.workdir, ".baton", "notes.md")
        state.parent.mkdir()
        state.write_text("v1\n", encoding="utf-8")
        self._git("add", ".baton/notes.md")
        self._git("commit", "-q", "-m", "track notes")
        state.write_text("v2\n", encoding="utf-8")

        agent = self._pending_agent("agent-001")
        self._commit_in(agent.worktree_path, "feature.txt", "x\n")
        self.assertEqual(merge_worktrees(self.workdir, [agent])[0].status, "merged")
        self.assertEqual(self._git("status", "--porcelain", "--", ".baton"), "")
        self.assertIn("snapshot", self._git("log", "--format=%s"))

    def test_bootstrap_copies_symlinks_and_runs_init(self) -> None:
        from baton.kernel.settings import WorktreeConfig
        from baton.kernel.worktree import bootstrap_worktree

        Path(self.workdir, ".env").write_text("SECRET=1\n", encoding="utf-8")
        Path(self.workdir, "node_modules", "pkg").mkdir(parents=True)
        Path(self.workdir, "node_modules", "pkg", "index.js").write_text("//\n", encoding="utf-8")
        Path(self.workdir, "cache").mkdir()

        agent = self._pending_agent("agent-001")
        config = WorktreeConfig(
            copy=[".env", "missing.txt"],
            clone=["node_modules"],
            symlink=["cache"],
            init="touch initialized",
        )
        bootstrap_worktree(self.workdir, agent.worktree_path, config)

        wt = Path(agent.worktree_path)
        self.assertEqual((wt / ".env").read_text(encoding="utf-8"), "SECRET=1\n")
        self.assertTrue((wt / "node_modules" / "pkg" / "index.js").exists())
        self.assertTrue((wt / "cache").is_symlink())
        self.assertTrue((wt / "initialized").exists())


@unittest.skipUnless(shutil.which("git"), "git is not installed")
class TestIsolatedAgents(_GitCase, unittest.IsolatedAsyncioTestCase):
    async def test_isolated_agent_runs_in_worktree_and_merges_before_respawn(self) -> None:
        from baton.daemon.coordinator import SessionCoordinator

        driver = FakeDriver()
        driver.add_window("@1")
        coord = SessionCoordinator(driver, settings_loader=fast_settings)
        self.addAsyncCleanup(coord.shutdown)
        session = await coord.start("t", self.workdir, "@1")
        agent = await coord.spawn_agent(session.id, "", "w", "work", worktree=True)

        self.assertEqual(agent.merge_status, "pending")
        self.assertEqual(driver.cwds[agent.pane_id], agent.worktree_path)
        self._commit_in(agent.worktree_path, "feature.txt", "from agent\n")

        await coord.yield_(session.id)
        self.assertTrue(await coord.submit(session.id, agent.id, "done"))
        await coord.drain()

        stored = coord.load(session.id)
        self.assertEqual(stored.find_agent(agent.id).merge_status, "merged")
        self.assertTrue(Path(self.workdir, "feature.txt").exists())
        self.assertEqual(len(stored.orchestrator_cycles), 2)

    async def test_isolation_outside_git_fails_before_any_state_change(self) -> None:
        from baton.daemon.coordinator import SessionCoordinator
        from baton.kernel.worktree import WorktreeError

        plain = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, plain, True)
        driver = FakeDriver()
        driver.add_window("@1")
        coord = SessionCoordinator(driver, settings_loader=fast_settings)
        self.addAsyncCleanup(coord.shutdown)
        session = await coord.start("t", plain, "@1")

        with self.assertRaises(WorktreeError):
            await coord.spawn_agent(session.id, "", "w", "work", worktree=True)
        self.assertEqual(coord.load(session.id).agents, [])


if __name__ == "__main__":
    unittest.main()
