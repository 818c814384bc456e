"""
Colony Orchestrator

Entry point for goals: routes them, runs a swarm session per goal and feeds
the outcomes to the learning engine. Goals run concurrently on a thread
pool; the memory store is the only state they share.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from colony.config import ColonyConfig, GoalOptions
from colony.errors import ColonyError, EmptyDecomposition
from colony.learning.critique import Critic, HeuristicCritic, ModelCritic
from colony.learning.engine import LearningEngine
from colony.logging import get_logger
from colony.memory.store import MemoryStore
from colony.protocols.gateway import Gateway
from colony.router import ModelDecomposer, RuleDecomposer, TaskRouter
from colony.swarm.coordinator import SwarmCoordinator
from colony.swarm.models import SessionResult, SessionStatus, TaskOutcome
from colony.swarm.tokens import CancellationToken
from colony.tasks import Goal, GoalStatus, TaskArena, TaskStatus

logger = get_logger("orchestrator")

Subscriber = Callable[["GoalReport"], None]


@dataclass
class GoalReport:
    """Point-in-time status of a goal."""

    goal_id: str
    text: str
    status: GoalStatus
    submitted_at: datetime
    session_id: str | None = None
    session_status: SessionStatus | None = None
    counts: dict[str, int] = field(default_factory=dict)
    retries: int = 0
    results: list[Any] = field(default_factory=list)
    failure: dict[str, Any] | None = None
    tasks: list[dict[str, Any]] = field(default_factory=list)
    finished_at: datetime | None = None

    @property
    def partial(self) -> bool:
        return self.session_status == SessionStatus.PARTIAL

    def snapshot(self) -> GoalReport:
        return replace(
            self,
            counts=dict(self.counts),
            results=list(self.results),
            failure=dict(self.failure) if self.failure else None,
            tasks=[dict(t) for t in self.tasks],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "text": self.text,
            "status": self.status.value,
            "submitted_at": self.submitted_at.isoformat(),
            "session_id": self.session_id,
            "session_status": self.session_status.value if self.session_status else None,
            "counts": dict(self.counts),
            "retries": self.retries,
            "results": list(self.results),
            "failure": self.failure,
            "tasks": [dict(t) for t in self.tasks],
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class _GoalRun:
    goal: Goal
    options: GoalOptions
    report: GoalReport
    token: CancellationToken = field(default_factory=CancellationToken)
    future: Future | None = None
    subscribers: list[Subscriber] = field(default_factory=list)


def _critic_for(config: ColonyConfig, gateway: Gateway) -> Critic:
    if config.learning.critic == "model":
        return ModelCritic(
            gateway, config.gateway.model_name, config.gateway.default_timeout_seconds
        )
    return HeuristicCritic()


class Orchestrator:
    """
    Accepts goals and drives them to a terminal status.

    The memory store and gateway are passed in and owned by the caller;
    ``shutdown`` stops goal processing but leaves them open.
    """

    def __init__(
        self,
        memory: MemoryStore,
        gateway: Gateway,
        config: ColonyConfig | None = None,
        router: TaskRouter | None = None,
        coordinator: SwarmCoordinator | None = None,
        learning: LearningEngine | None = None,
    ):
        self.config = config or ColonyConfig()
        self.memory = memory
        self.gateway = gateway

        if router is None:
            rules = RuleDecomposer(
                self.config.router.specialization_keywords,
                self.config.router.default_specialization,
            )
            decomposer = rules
            if self.config.router.decomposer == "model":
                decomposer = ModelDecomposer(
                    gateway,
                    self.config.gateway.model_name,
                    self.config.gateway.default_timeout_seconds,
                    fallback=rules,
                )
            router = TaskRouter(memory, self.config.router, decomposer)
        self.router = router
        self.coordinator = coordinator or SwarmCoordinator(
            gateway,
            self.config.swarm,
            model_name=self.config.gateway.model_name,
            gateway_timeout=self.config.gateway.default_timeout_seconds,
        )
        self.learning = learning or LearningEngine(
            memory, self.config.learning, _critic_for(self.config, gateway)
        )

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.swarm.max_concurrent_goals,
            thread_name_prefix="colony-goal",
        )
        self._lock = threading.Lock()
        self._runs: dict[str, _GoalRun] = {}
        self._closed = False
        self.learning.start()
        logger.info("Orchestrator initialized")

    # --- Public API ---

    def submit(self, text: str, options: GoalOptions | None = None) -> str:
        """Queue a goal and return its id immediately."""
        if self._closed:
            raise RuntimeError("Orchestrator is shut down")
        goal = Goal.new(text)
        run = _GoalRun(
            goal=goal,
            options=options or GoalOptions(),
            report=GoalReport(goal.id, text, goal.status, goal.submitted_at),
        )
        with self._lock:
            self._runs[goal.id] = run
            run.future = self._executor.submit(self._execute, run)
        logger.info(f"Goal {goal.id[:8]} submitted: {text[:60]!r}")
        return goal.id

    def run(
        self, text: str, options: GoalOptions | None = None, timeout: float | None = None
    ) -> GoalReport:
        """Submit a goal and block until it is terminal."""
        return self.wait(self.submit(text, options), timeout)

    def status(self, goal_id: str) -> GoalReport:
        with self._lock:
            return self._run(goal_id).report.snapshot()

    def goals(self) -> list[GoalReport]:
        with self._lock:
            return [run.report.snapshot() for run in self._runs.values()]

    def wait(self, goal_id: str, timeout: float | None = None) -> GoalReport:
        """Block until the goal is terminal.

        Raises:
            concurrent.futures.TimeoutError: If the goal is still running.
        """
        with self._lock:
            future = self._run(goal_id).future
        try:
            future.result(timeout=timeout)
        except CancelledError:
            pass
        return self.status(goal_id)

    def cancel(self, goal_id: str) -> bool:
        """Request cancellation. Returns False if the goal already finished."""
        with self._lock:
            run = self._run(goal_id)
            if run.report.status.terminal:
                return False
            run.token.cancel("cancelled by caller")
            never_started = run.future.cancel()
        if never_started:
            self._finish(run, GoalStatus.CANCELLED, failure={"error": "Cancelled"})
        logger.info(f"Goal {goal_id[:8]} cancellation requested")
        return True

    def subscribe(self, goal_id: str, callback: Subscriber) -> None:
        """Call ``callback`` with a report on every status change of a goal."""
        with self._lock:
            run = self._run(goal_id)
            run.subscribers.append(callback)
            report = run.report.snapshot()
        if report.status.terminal:
            self._deliver(callback, report)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if self._closed:
            return
        self._closed = True
        if cancel_running:
            with self._lock:
                pending = [gid for gid, r in self._runs.items() if not r.report.status.terminal]
            for goal_id in pending:
                self.cancel(goal_id)
        self._executor.shutdown(wait=wait)
        self.learning.stop()
        logger.info("Orchestrator shut down")

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # --- Goal execution ---

    def _run(self, goal_id: str) -> _GoalRun:
        run = self._runs.get(goal_id)
        if run is None:
            raise KeyError(f"Unknown goal {goal_id!r}")
        return run

    def _execute(self, run: _GoalRun) -> None:
        goal = run.goal
        self._update(run, status=GoalStatus.RUNNING)
        try:
            try:
                tasks = self.router.route(goal, run.options)
            except EmptyDecomposition as e:
                logger.warning(f"Goal {goal.id[:8]}: {e}")
                self._finish(run, GoalStatus.FAILED, failure=e.detail())
                return

            if run.token.cancelled:
                self._finish(run, GoalStatus.CANCELLED, failure={"error": "Cancelled"})
                return

            arena = TaskArena(tasks)
            settings = self.coordinator.settings(run.options)
            self._update(run, tasks=[t.to_dict() for t in arena])
            result = self.coordinator.run_session(
                goal.id,
                arena,
                settings,
                run.token,
                on_task=lambda outcome: self._on_task(run, arena, outcome),
                on_status=lambda status: self._update(run, session_status=status),
            )
            self._learn(arena, result)
            self._complete(run, arena, result)
        except ColonyError as e:
            logger.error(f"Goal {goal.id[:8]} failed: {e}")
            self._finish(run, GoalStatus.FAILED, failure=e.detail())
        except Exception as e:
            self._finish(
                run, GoalStatus.FAILED, failure={"error": type(e).__name__, "message": str(e)}
            )
            raise

    def _learn(self, arena: TaskArena, result: SessionResult) -> None:
        """Feed terminal outcomes to the learning engine in task order."""
        for task in arena.leaves():
            outcome = result.outcomes.get(task.id)
            if outcome is None or not outcome.status.terminal:
                continue
            try:
                self.learning.record_outcome(task, outcome, result.session_id)
            except ColonyError as e:
                logger.error(f"Learning from task {task.id[:8]} failed: {e}")

    def _complete(self, run: _GoalRun, arena: TaskArena, result: SessionResult) -> None:
        failure = result.failure_detail()
        if result.status == SessionStatus.ABORTED:
            status = GoalStatus.CANCELLED if result.cancelled_by_caller else GoalStatus.FAILED
        else:
            status = GoalStatus.DONE
            if result.status == SessionStatus.PARTIAL:
                failure = {
                    "error": "PartialCompletion",
                    "failed_tasks": {
                        tid: o.error
                        for tid, o in result.outcomes.items()
                        if o.status != TaskStatus.SUCCEEDED
                    },
                }
        self._finish(
            run,
            status,
            failure=failure,
            session_id=result.session_id,
            session_status=result.status,
            counts=result.counts(),
            retries=result.retries,
            results=list(result.results),
            tasks=[t.to_dict() for t in arena],
        )

    def _on_task(self, run: _GoalRun, arena: TaskArena, outcome: TaskOutcome) -> None:
        # Runs on the session thread, the only writer of this arena
        logger.debug(f"Goal {run.goal.id[:8]} task {outcome.task_id[:8]} {outcome.status.value}")
        changes: dict[str, Any] = {
            "counts": arena.counts(),
            "tasks": [t.to_dict() for t in arena],
        }
        if outcome.status == TaskStatus.SUCCEEDED:
            # Arrival order until the session ends, then task order
            changes["results"] = run.report.results + [outcome.result]
        self._update(run, **changes)

    # --- Report bookkeeping ---

    def _update(self, run: _GoalRun, **changes: Any) -> None:
        with self._lock:
            if run.report.status.terminal:
                return
            for key, value in changes.items():
                setattr(run.report, key, value)
            if "status" in changes:
                run.goal.status = changes["status"]
            report = run.report.snapshot()
            subscribers = list(run.subscribers)
        for callback in subscribers:
            self._deliver(callback, report)

    def _finish(self, run: _GoalRun, status: GoalStatus, **changes: Any) -> None:
        changes.update(status=status, finished_at=datetime.now(timezone.utc))
        self._update(run, **changes)
        logger.info(f"Goal {run.goal.id[:8]} {status.value}")

    @staticmethod
    def _deliver(callback: Subscriber, report: GoalReport) -> None:
        try:
            callback(report)
        except Exception as e:
            logger.error(f"Goal subscriber {callback!r} raised: {e}")
