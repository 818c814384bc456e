"""Tests for the orchestrator: goal lifecycle, learning loop and cancellation."""

from __future__ import annotations

import json
import threading
import time

import pytest

from colony.config import ColonyConfig, GoalOptions
from colony.gateway import GatewayRequest, GatewayResponse, MockGateway
from colony.learning import ModelCritic
from colony.memory import MemoryStore
from colony.orchestrator import GoalReport, Orchestrator
from colony.router import ModelDecomposer
from colony.swarm import SessionStatus
from colony.tasks import GoalStatus, fingerprint

# ── Helpers ──────────────────────────────────────────────────────────


class _Gate:
    """Scripted gateway outcome that blocks until opened."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, request: GatewayRequest) -> GatewayResponse:
        self.started.set()
        self.release.wait(5)
        return GatewayResponse.success("held result")


@pytest.fixture
def orchestrator(memory: MemoryStore, mock_gateway: MockGateway, colony_config: ColonyConfig):
    orch = Orchestrator(memory, mock_gateway, colony_config)
    yield orch
    orch.shutdown(cancel_running=True)


# ════════════════════════════════════════════════════════════════════
# TestGoalLifecycle
# ════════════════════════════════════════════════════════════════════


class TestGoalLifecycle:
    def test_run_to_done(self, orchestrator: Orchestrator, memory: MemoryStore):
        report = orchestrator.run("implement the parser; write the docs", timeout=10)
        assert report.status == GoalStatus.DONE
        assert report.session_status == SessionStatus.COMPLETED
        assert report.counts["succeeded"] == 2
        assert report.results == ["Mock result.", "Mock result."]
        assert report.failure is None
        assert [t["specialization"] for t in report.tasks] == ["coder", "writer"]
        assert report.finished_at is not None
        assert memory.stats() == {"episodic": 2, "reflexion": 2, "skills": 0}

    def test_empty_goal_fails(self, orchestrator: Orchestrator):
        report = orchestrator.run("   ", timeout=10)
        assert report.status == GoalStatus.FAILED
        assert report.failure["error"] == "EmptyDecomposition"
        assert report.session_id is None

    def test_partial_is_done_with_detail(self, memory: MemoryStore, colony_config: ColonyConfig):
        gateway = MockGateway().script("write the docs", "error")
        with Orchestrator(memory, gateway, colony_config) as orch:
            report = orch.run("implement the parser; write the docs", timeout=10)
        assert report.status == GoalStatus.DONE
        assert report.partial
        assert report.failure["error"] == "PartialCompletion"
        (failed,) = report.failure["failed_tasks"].values()
        assert failed["error"] == "GatewayError"
        assert report.results == ["Mock result."]

    def test_aborted_session_fails_goal(self, memory: MemoryStore, colony_config: ColonyConfig):
        gateway = MockGateway().script("write the docs", "error")
        with Orchestrator(memory, gateway, colony_config) as orch:
            report = orch.run(
                "implement the parser; write the docs",
                GoalOptions(allow_partial=False),
                timeout=10,
            )
        assert report.status == GoalStatus.FAILED
        assert report.session_status == SessionStatus.ABORTED
        assert report.failure["error"] == "SessionAborted"
        assert len(report.failure["failed_tasks"]) == 1

    def test_concurrent_goals(self, orchestrator: Orchestrator):
        ids = [orchestrator.submit(f"implement feature {n}") for n in range(3)]
        reports = [orchestrator.wait(goal_id, timeout=10) for goal_id in ids]
        assert all(r.status == GoalStatus.DONE for r in reports)
        assert {r.goal_id for r in orchestrator.goals()} == set(ids)

    def test_unknown_goal(self, orchestrator: Orchestrator):
        with pytest.raises(KeyError):
            orchestrator.status("nope")
        with pytest.raises(KeyError):
            orchestrator.cancel("nope")

    def test_submit_after_shutdown(self, orchestrator: Orchestrator):
        orchestrator.shutdown()
        with pytest.raises(RuntimeError):
            orchestrator.submit("implement the parser")

    def test_report_serializes(self, orchestrator: Orchestrator):
        data = orchestrator.run("fix the bug", timeout=10).to_dict()
        assert data["status"] == "done"
        assert data["session_status"] == "completed"
        assert data["tasks"][0]["description"] == "fix the bug"


# ════════════════════════════════════════════════════════════════════
# TestLearningLoop
# ════════════════════════════════════════════════════════════════════


class TestLearningLoop:
    def test_repeated_goal_becomes_warm(
        self, orchestrator: Orchestrator, memory: MemoryStore, mock_gateway: MockGateway
    ):
        fp = fingerprint("implement the parser", "coder")
        for _ in range(4):
            orchestrator.run("implement the parser", timeout=10)
        assert memory.skills_for(fp) == []

        fifth = orchestrator.run("implement the parser", timeout=10)
        assert fifth.tasks[0]["skill"] is None
        skill = memory.skills_for(fp)[0]
        assert skill.version == 1

        sixth = orchestrator.run("implement the parser", timeout=10)
        assert sixth.tasks[0]["skill"] == skill.name
        assert "A procedure that worked before" in mock_gateway.calls[-1].arguments["prompt"]

        updated = memory.skills_for(fp)
        assert len(updated) == 1
        assert updated[0].version == 2
        assert updated[0].usage_count == 1

    def test_failures_are_learned(self, memory: MemoryStore, colony_config: ColonyConfig):
        gateway = MockGateway().script("parser", "error")
        with Orchestrator(memory, gateway, colony_config) as orch:
            orch.run("implement the parser", timeout=10)
        (reflexion,) = memory.reflexions_for(fingerprint("implement the parser", "coder"))
        assert not reflexion.succeeded
        assert reflexion.critique.startswith("Failed via model:default after 1 attempt")
        assert "scripted error" in reflexion.critique


# ════════════════════════════════════════════════════════════════════
# TestCancellation
# ════════════════════════════════════════════════════════════════════


class TestCancellation:
    def test_cancel_running_goal(self, memory: MemoryStore, colony_config: ColonyConfig):
        gate = _Gate()
        gateway = MockGateway().script("hold", gate)
        orch = Orchestrator(memory, gateway, colony_config)
        try:
            goal_id = orch.submit("hold the line")
            assert gate.started.wait(5)
            assert orch.cancel(goal_id)
            report = orch.wait(goal_id, timeout=10)
        finally:
            gate.release.set()
            orch.shutdown()

        assert report.status == GoalStatus.CANCELLED
        assert report.session_status == SessionStatus.ABORTED
        assert report.counts["cancelled"] == 1
        assert not orch.cancel(goal_id)

    def test_cancel_queued_goal(self, memory: MemoryStore, colony_config: ColonyConfig):
        colony_config.swarm.max_concurrent_goals = 1
        gate = _Gate()
        gateway = MockGateway().script("hold", gate)
        orch = Orchestrator(memory, gateway, colony_config)
        try:
            first = orch.submit("hold the line")
            assert gate.started.wait(5)
            queued = orch.submit("fix the bug")
            assert orch.cancel(queued)
            report = orch.wait(queued, timeout=1)
            assert report.status == GoalStatus.CANCELLED
            assert report.session_id is None
        finally:
            gate.release.set()
            orch.shutdown()
        assert orch.status(first).status == GoalStatus.DONE

    def test_shutdown_cancels_running(self, memory: MemoryStore, colony_config: ColonyConfig):
        gate = _Gate()
        gateway = MockGateway().script("hold", gate)
        orch = Orchestrator(memory, gateway, colony_config)
        try:
            goal_id = orch.submit("hold the line")
            assert gate.started.wait(5)
            orch.shutdown(cancel_running=True)
        finally:
            gate.release.set()
        assert orch.status(goal_id).status == GoalStatus.CANCELLED


# ════════════════════════════════════════════════════════════════════
# TestSubscriptions
# ════════════════════════════════════════════════════════════════════


class TestSubscriptions:
    def test_subscriber_sees_progress(self, memory: MemoryStore, colony_config: ColonyConfig):
        gate = _Gate()
        gateway = MockGateway().script("hold", gate)
        seen: list[GoalReport] = []
        with Orchestrator(memory, gateway, colony_config) as orch:
            goal_id = orch.submit("hold the line")
            assert gate.started.wait(5)
            orch.subscribe(goal_id, seen.append)
            gate.release.set()
            orch.wait(goal_id, timeout=10)

        assert seen[-1].status == GoalStatus.DONE
        assert any(not r.status.terminal for r in seen)
        assert sum(1 for r in seen if r.status.terminal) == 1

    def test_status_shows_partial_results_while_running(
        self, memory: MemoryStore, colony_config: ColonyConfig
    ):
        gate = _Gate()
        gateway = MockGateway().script("hold", gate)
        with Orchestrator(memory, gateway, colony_config) as orch:
            goal_id = orch.submit("implement the parser; hold the line")
            assert gate.started.wait(5)
            deadline = time.monotonic() + 5
            report = orch.status(goal_id)
            while report.counts.get("succeeded", 0) < 1 and time.monotonic() < deadline:
                time.sleep(0.01)
                report = orch.status(goal_id)
            gate.release.set()
            final = orch.wait(goal_id, timeout=10)

        assert report.status == GoalStatus.RUNNING
        assert report.results == ["Mock result."]
        statuses = {t["description"]: t["status"] for t in report.tasks}
        assert statuses["implement the parser"] == "succeeded"
        assert statuses["hold the line"] != "succeeded"
        assert final.results == ["Mock result.", "held result"]

    def test_late_subscriber_gets_final_report(self, orchestrator: Orchestrator):
        goal_id = orchestrator.submit("fix the bug")
        orchestrator.wait(goal_id, timeout=10)
        seen: list[GoalReport] = []
        orchestrator.subscribe(goal_id, seen.append)
        assert [r.status for r in seen] == [GoalStatus.DONE]

    def test_broken_subscriber_is_isolated(self, orchestrator: Orchestrator):
        def broken(report):
            raise RuntimeError("listener bug")

        goal_id = orchestrator.submit("fix the bug")
        orchestrator.subscribe(goal_id, broken)
        assert orchestrator.wait(goal_id, timeout=10).status == GoalStatus.DONE


# ════════════════════════════════════════════════════════════════════
# TestConfiguredPolicies
# ════════════════════════════════════════════════════════════════════


class TestConfiguredPolicies:
    def test_model_decomposer(self, memory: MemoryStore, colony_config: ColonyConfig):
        colony_config.router.decomposer = "model"
        plan = [{"description": "outline the post", "specialization": "writer"}]
        gateway = MockGateway().script("Goal:", GatewayResponse.success(json.dumps(plan)))
        with Orchestrator(memory, gateway, colony_config) as orch:
            assert isinstance(orch.router.decomposer, ModelDecomposer)
            report = orch.run("blog about caching", timeout=10)
        assert [t["description"] for t in report.tasks] == ["outline the post"]
        assert report.status == GoalStatus.DONE

    def test_model_critic(self, memory: MemoryStore, colony_config: ColonyConfig):
        colony_config.learning.critic = "model"
        gateway = MockGateway(default_payload="Looks right.")
        with Orchestrator(memory, gateway, colony_config) as orch:
            assert isinstance(orch.learning.critic, ModelCritic)
            orch.run("fix the bug", timeout=10)
        (reflexion,) = memory.reflexions_for(fingerprint("fix the bug", "coder"))
        assert reflexion.critique == "Looks right."
