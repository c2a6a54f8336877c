import itertools
import unittest

from baton.contracts.v1 import Agent, OrchestratorCycle, Session, format_agent_id, parse_agent_counter


def _session(*statuses: str) -> Session:
    agents = [Agent(id=format_agent_id(i + 1), name=f"a{i}", status=s) for i, s in enumerate(statuses)]
    return Session(id="s", task="t", cwd="/tmp", agents=agents)


class TestAllAgentsDone(unittest.TestCase):
    def test_false_without_agents(self) -> None:
        self.assertFalse(_session().all_agents_done())

    def test_false_while_any_agent_runs(self) -> None:
        self.assertFalse(_session("running").all_agents_done())
        self.assertFalse(_session("completed", "running", "lost").all_agents_done())

    def test_true_for_any_mix_of_terminal_statuses(self) -> None:
        terminal = ("completed", "killed", "crashed", "lost")
        for n in (1, 2, 3):
            for combo in itertools.product(terminal, repeat=n):
                self.assertTrue(_session(*combo).all_agents_done(), combo)


class TestSessionModel(unittest.TestCase):
    def test_agent_id_format(self) -> None:
        self.assertEqual(format_agent_id(7), "agent-007")
        self.assertEqual(format_agent_id(1234), "agent-1234")
        self.assertEqual(parse_agent_counter("agent-042"), 42)
        self.assertEqual(parse_agent_counter("orchestrator"), 0)

    def test_max_agent_counter_uses_highest_id(self) -> None:
        s = _session("completed", "completed")
        s.agents.append(Agent(id="agent-010", name="late"))
        self.assertEqual(s.max_agent_counter(), 10)

    def test_cycle_helpers(self) -> None:
        s = _session()
        self.assertIsNone(s.current_cycle())
        s.orchestrator_cycles.append(OrchestratorCycle(cycle=1, completed_at="2024-01-01T00:00:00Z", next_prompt="go"))
        s.orchestrator_cycles.append(OrchestratorCycle(cycle=2, pane_id="%3"))
        self.assertEqual(s.current_cycle().cycle, 2)
        self.assertEqual(s.last_completed_cycle().next_prompt, "go")

    def test_summary_shape(self) -> None:
        summary = _session("running").summary()
        self.assertEqual(summary["agentCount"], 1)
        self.assertEqual(set(summary), {"id", "task", "status", "createdAt", "completedAt", "agentCount", "cwd"})

    def test_documents_ignore_unknown_fields(self) -> None:
        s = Session.model_validate({"id": "s", "task": "t", "cwd": "/", "futureField": 1})
        self.assertEqual(s.status, "active")


if __name__ == "__main__":
    unittest.main()
