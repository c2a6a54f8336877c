import unittest
from pathlib import Path

from _support import with_home


class TestSummaries(unittest.TestCase):
    def test_first_non_blank_line(self) -> None:
        from baton.kernel.prompts import summarize

        self.assertEqual(summarize("\n\n  fixed the parser  \nmore detail"), "fixed the parser")
        self.assertEqual(summarize(""), "")
        self.assertEqual(summarize("   \n  "), "")

    def test_long_lines_are_truncated(self) -> None:
        from baton.kernel.prompts import SUMMARY_MAX_CHARS, summarize

        out = summarize("x" * 500)
        self.assertEqual(len(out), SUMMARY_MAX_CHARS)
        self.assertTrue(out.endswith("..."))


class TestOrchestratorMessage(unittest.TestCase):
    def setUp(self) -> None:
        self.home, self.workdir, cleanup = with_home()
        self.addCleanup(cleanup)

    def _session(self):
        from baton.kernel.state import StateStore

        store = StateStore()
        return store.create("0123456789abcdef", "ship the release", self.workdir)

    def test_state_lists_every_section(self) -> None:
        from baton.contracts.v1 import Agent, AgentReport, OrchestratorCycle, Task
        from baton.kernel.prompts import format_state

        session = self._session()
        session.tasks.append(Task(id="t1", description="write notes", status="in_progress"))
        session.agents.append(
            Agent(
                id="agent-001",
                name="writer",
                status="completed",
                reports=[
                    AgentReport(kind="update", path="reports/agent-001-update-001.md", summary="drafted"),
                    AgentReport(kind="final", path="reports/agent-001-final.md", summary="done"),
                ],
            )
        )
        session.agents.append(
            Agent(
                id="agent-002",
                name="fixer",
                status="completed",
                worktree_path="/tmp/wt/agent-002",
                branch_name="baton/01234567/agent-002",
                merge_status="conflict",
                merge_details="src/app.py",
            )
        )
        session.orchestrator_cycles.append(
            OrchestratorCycle(cycle=1, agents_spawned=["agent-001", "agent-002"], completed_at="2024-01-01T00:00:00Z")
        )

        text = format_state(session)
        self.assertTrue(text.startswith("<state>"))
        self.assertTrue(text.endswith("</state>"))
        self.assertIn("session: 01234567 (cycle 2)", text)
        for heading in ("## Plan", "## Logs", "## Tasks", "## Agents", "## Worktrees", "## Previous Cycles",
                        "## Context Files", "## Git Worktrees"):
            self.assertIn(heading, text)
        self.assertIn("- t1 [in_progress] write notes", text)
        self.assertIn('[update 001] "drafted"', text)
        self.assertIn('[final] "done"', text)
        self.assertIn("agent-002: CONFLICT: src/app.py", text)
        self.assertIn("Cycle 1: spawned agent-001, agent-002", text)
        self.assertIn("No worktree configuration", text)

    def test_empty_sections_say_none(self) -> None:
        from baton.kernel.prompts import format_state

        text = format_state(self._session())
        self.assertNotIn("## Worktrees\n", text)
        self.assertEqual(text.count("(none)"), 3)
        self.assertIn("- README.md", text)

    def test_context_files_are_listed(self) -> None:
        from baton.kernel.prompts import format_state
        from baton.paths import context_dir

        session = self._session()
        Path(context_dir(self.workdir, session.id), "api.md").write_text("notes", encoding="utf-8")
        self.assertIn("- api.md", format_state(session))

    def test_message_priority(self) -> None:
        from baton.contracts.v1 import OrchestratorCycle
        from baton.kernel.prompts import DEFAULT_CONTINUATION, compose_orchestrator_message

        session = self._session()
        self.assertTrue(compose_orchestrator_message(session).endswith(DEFAULT_CONTINUATION))

        session.orchestrator_cycles.append(
            OrchestratorCycle(cycle=1, completed_at="2024-01-01T00:00:00Z", next_prompt="verify the build")
        )
        self.assertTrue(compose_orchestrator_message(session).endswith("verify the build"))

        resumed = compose_orchestrator_message(session, "focus on docs")
        self.assertIn("focus on docs", resumed)
        self.assertNotIn("verify the build", resumed)

    def test_project_prompt_overrides_default(self) -> None:
        from baton.kernel.prompts import DEFAULT_ORCHESTRATOR_PROMPT, load_orchestrator_prompt
        from baton.paths import orchestrator_prompt_path

        self.assertEqual(load_orchestrator_prompt(self.workdir), DEFAULT_ORCHESTRATOR_PROMPT)
        path = orchestrator_prompt_path(self.workdir)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("custom", encoding="utf-8")
        self.assertEqual(load_orchestrator_prompt(self.workdir), "custom")


class TestLaunchCommand(unittest.TestCase):
    def test_prompt_files_are_quoted(self) -> None:
        from baton.kernel.prompts import build_launch_command

        cmd = build_launch_command(
            "export BATON_SESSION_ID=s",
            "claude",
            system_prompt_file="/tmp/my dir/sys.md",
            message_file="/tmp/msg.md",
        )
        self.assertTrue(cmd.startswith("export BATON_SESSION_ID=s && claude --append-system-prompt "))
        self.assertIn("\"$(cat '/tmp/my dir/sys.md')\"", cmd)
        self.assertTrue(cmd.endswith('"$(cat /tmp/msg.md)"'))

    def test_openai_joins_prompts_into_one_argument(self) -> None:
        from baton.kernel.prompts import build_launch_command

        cmd = build_launch_command(
            "",
            "codex",
            system_prompt_file="/tmp/sys.md",
            message_file="/tmp/msg.md",
            provider="openai",
            model="gpt-5-codex",
        )
        self.assertEqual(cmd, 'codex --model gpt-5-codex "$(cat /tmp/sys.md /tmp/msg.md)"')

    def test_model_is_passed_to_anthropic_cli(self) -> None:
        from baton.kernel.prompts import build_launch_command

        cmd = build_launch_command("", "claude", system_prompt_file="/s", message_file="/m", model="claude-opus")
        self.assertEqual(cmd, 'claude --model claude-opus --append-system-prompt "$(cat /s)" "$(cat /m)"')

    def test_agent_prompt_prepends_type_body(self) -> None:
        from baton.kernel.prompts import render_agent_prompt

        text = render_agent_prompt("s1", "agent-003", "fix it", type_body="You review code.\n")
        self.assertTrue(text.startswith("You review code.\n\n# Baton agent"))
        self.assertIn("Agent: agent-003", text)
        self.assertIn("fix it", text)


if __name__ == "__main__":
    unittest.main()
