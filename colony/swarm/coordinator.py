"""
Swarm Coordinator

Runs one goal's leaf tasks on a pool of specialized workers, aggregates the
outcomes and owns retry, reassignment and cancellation policy.
"""

from __future__ import annotations

import queue
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from colony.config import SwarmConfig
from colony.errors import Cancelled, ColonyError, NoWorkerAvailable, SessionAborted, WorkerFailure
from colony.logging import get_logger
from colony.protocols.gateway import Gateway
from colony.swarm.aggregation import Tally, abort_reason, decide
from colony.swarm.models import (
    Assignment,
    EventKind,
    SessionResult,
    SessionSettings,
    SessionStatus,
    TaskOutcome,
    WorkerEvent,
    WorkerState,
)
from colony.swarm.tokens import CancellationToken
from colony.swarm.worker import SpecializationProfile, Worker
from colony.tasks import TaskArena, TaskStatus

logger = get_logger("swarm.coordinator")

TaskListener = Callable[[TaskOutcome], None]
StatusListener = Callable[[SessionStatus], None]


def _error_detail(error: BaseException) -> dict[str, Any]:
    if isinstance(error, ColonyError):
        return error.detail()
    return {"error": type(error).__name__, "message": str(error)}


def _is_retryable(error: BaseException | None) -> bool:
    if error is None:
        return True
    if isinstance(error, ColonyError):
        return error.retryable
    # Unexpected worker exceptions are treated as transient
    return True


class SwarmCoordinator:
    """
    Queen of the swarm: assigns tasks, collects results, aggregates.

    A coordinator can run many sessions, one per call to ``run_session``;
    sessions share nothing but the gateway.
    """

    def __init__(
        self,
        gateway: Gateway,
        config: SwarmConfig | None = None,
        profiles: dict[str, SpecializationProfile] | None = None,
        model_name: str = "default",
        gateway_timeout: float = 30.0,
    ):
        self.gateway = gateway
        self.config = config or SwarmConfig()
        self.profiles: dict[str, SpecializationProfile] = dict(profiles or {})
        self.model_name = model_name
        self.gateway_timeout = gateway_timeout

    def register_profile(self, profile: SpecializationProfile) -> None:
        self.profiles[profile.specialization] = profile

    def profile_for(self, specialization: str) -> SpecializationProfile:
        profile = self.profiles.get(specialization)
        if profile is None:
            profile = SpecializationProfile.model(specialization, self.model_name)
        return profile

    def settings(self, options=None) -> SessionSettings:
        return SessionSettings.resolve(self.config, options, self.gateway_timeout)

    def run_session(
        self,
        goal_id: str,
        arena: TaskArena,
        settings: SessionSettings | None = None,
        token: CancellationToken | None = None,
        on_task: TaskListener | None = None,
        on_status: StatusListener | None = None,
    ) -> SessionResult:
        """Run every leaf task of ``arena`` to a terminal state.

        Args:
            goal_id: Goal the tasks belong to.
            arena: Task tree; only leaves are dispatched.
            settings: Effective session settings (defaults from config).
            token: Session cancellation token.
            on_task: Called with each task outcome once it is terminal.
            on_status: Called on every session status transition.

        Returns:
            SessionResult. An aborted session carries a SessionAborted error.
        """
        session = _Session(
            self,
            goal_id,
            arena,
            settings or self.settings(),
            token or CancellationToken(),
            on_task,
            on_status,
        )
        return session.run()


class _Session:
    """Loop state of one swarm session; lives on the caller's thread."""

    def __init__(
        self,
        coordinator: SwarmCoordinator,
        goal_id: str,
        arena: TaskArena,
        settings: SessionSettings,
        token: CancellationToken,
        on_task: TaskListener | None,
        on_status: StatusListener | None,
    ):
        self.id = str(uuid.uuid4())
        self.coordinator = coordinator
        self.goal_id = goal_id
        self.arena = arena
        self.settings = settings
        self.token = token
        self.on_task = on_task
        self.on_status = on_status

        self.inbox: queue.Queue[WorkerEvent] = queue.Queue()
        self.leaves = arena.leaves()
        self.outcomes: dict[str, TaskOutcome] = {
            t.id: TaskOutcome(
                task_id=t.id,
                description=t.description,
                specialization=t.specialization,
                skill_id=t.hint.skill_id if t.hint else None,
            )
            for t in self.leaves
        }
        self.quorum = settings.quorum_required(len(self.leaves))
        self.workers: dict[str, list[Worker]] = {}
        self.ready: list[str] = [t.id for t in self.leaves]
        self.not_before: dict[str, float] = {}
        self.waiting_since: dict[str, float] = {}
        self.warned: set[str] = set()
        self.last_failed: dict[str, str] = {}
        self.inflight: dict[str, tuple[Worker, int, CancellationToken]] = {}
        self.history: list[tuple[SessionStatus, datetime]] = []
        self.retries = 0
        self.decision: SessionStatus | None = None
        self.reason = ""
        self.cancelled_by_caller = False

    # --- Lifecycle ---

    def run(self) -> SessionResult:
        self._transition(SessionStatus.FORMING)
        pool_size = max(1, sum(self.settings.worker_count(s) for s in self._specializations()))
        self._pool = ThreadPoolExecutor(
            max_workers=pool_size, thread_name_prefix=f"colony-worker-{self.id[:8]}"
        )
        self._calls = ThreadPoolExecutor(
            max_workers=pool_size, thread_name_prefix=f"colony-call-{self.id[:8]}"
        )
        try:
            self._form_workers()
            logger.info(
                f"Session {self.id[:8]} for goal {self.goal_id[:8]}: {len(self.leaves)} tasks, "
                f"{pool_size} workers, strategy={self.settings.aggregation.value}"
            )
            self._transition(SessionStatus.DISPATCHING)
            self._loop()
            self._finish()
        finally:
            # Empty unless the loop raised; stop workers of a dead session
            for _, _, child in self.inflight.values():
                child.cancel("session error")
            # Abandoned gateway calls may still be blocked; never wait on them
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._calls.shutdown(wait=False, cancel_futures=True)

        result = SessionResult(
            session_id=self.id,
            goal_id=self.goal_id,
            strategy=self.settings.aggregation,
            status=self.decision or SessionStatus.ABORTED,
            outcomes=self.outcomes,
            results=[
                self.outcomes[t.id].result
                for t in self.leaves
                if self.outcomes[t.id].status == TaskStatus.SUCCEEDED
            ],
            retries=self.retries,
            history=self.history,
            cancelled_by_caller=self.cancelled_by_caller,
        )
        if result.status == SessionStatus.ABORTED:
            result.error = SessionAborted(
                self.id,
                self.reason,
                [tid for tid, o in self.outcomes.items() if o.status != TaskStatus.SUCCEEDED],
            )
        logger.info(
            f"Session {self.id[:8]} {result.status.value}: {result.counts()} "
            f"retries={self.retries}"
        )
        return result

    def _specializations(self) -> list[str]:
        return list(dict.fromkeys(t.specialization for t in self.leaves))

    def _form_workers(self) -> None:
        for specialization in self._specializations():
            profile = self.coordinator.profile_for(specialization)
            count = self.settings.worker_count(specialization)
            self.workers[specialization] = [
                Worker(
                    f"{specialization}-{i + 1}",
                    profile,
                    self.coordinator.gateway,
                    self.inbox,
                    self._calls,
                    self.settings.poll_interval_seconds,
                )
                for i in range(count)
            ]

    def _transition(self, status: SessionStatus) -> None:
        self.history.append((status, datetime.now(timezone.utc)))
        logger.debug(f"Session {self.id[:8]} -> {status.value}")
        if self.on_status is not None:
            self.on_status(status)

    # --- Main loop ---

    def _loop(self) -> None:
        collecting = False
        while self.decision is None:
            if self.token.cancelled:
                self.decision = SessionStatus.ABORTED
                self.reason = f"cancelled: {self.token.reason}"
                self.cancelled_by_caller = True
                break

            self._dispatch()
            if not collecting:
                self._transition(SessionStatus.COLLECTING)
                collecting = True

            self._decide()
            if self.decision is not None:
                break

            try:
                event = self.inbox.get(timeout=self.settings.poll_interval_seconds)
            except queue.Empty:
                continue
            self._handle(event)
            self._decide()

    def _decide(self) -> None:
        if self.decision is not None:
            return
        tally = self._tally()
        decision = decide(
            self.settings.aggregation, tally, self.quorum, self.settings.allow_partial
        )
        if decision is None:
            return
        self.decision = decision
        if decision == SessionStatus.ABORTED:
            self.reason = abort_reason(self.settings.aggregation, tally, self.quorum)

    def _tally(self) -> Tally:
        counts = {status: 0 for status in TaskStatus}
        for outcome in self.outcomes.values():
            counts[outcome.status] += 1
        return Tally(
            total=len(self.outcomes),
            succeeded=counts[TaskStatus.SUCCEEDED],
            failed=counts[TaskStatus.FAILED],
            cancelled=counts[TaskStatus.CANCELLED],
        )

    # --- Dispatch ---

    def _pick(self, live: list[Worker], task_id: str) -> Worker | None:
        idle = [w for w in live if w.available]
        if not idle:
            return None
        # Reassign away from the worker that last failed this task when possible
        preferred = [w for w in idle if w.id != self.last_failed.get(task_id)]
        return (preferred or idle)[0]

    def _dispatch(self) -> None:
        now = time.monotonic()
        for task_id in list(self.ready):
            if self.not_before.get(task_id, 0.0) > now:
                continue
            task = self.arena.get(task_id)
            live = [w for w in self.workers.get(task.specialization, []) if not w.retired]
            if not live:
                self._fail_undispatched(task_id, NoWorkerAvailable(task.specialization, 0.0))
                continue

            worker = self._pick(live, task_id)
            if worker is not None:
                self._start(task_id, worker)
                continue

            waited = now - self.waiting_since.setdefault(task_id, now)
            if waited < self.settings.dispatch_wait_seconds:
                continue
            if self.settings.no_worker_policy == "fail":
                self._fail_undispatched(task_id, NoWorkerAvailable(task.specialization, waited))
            elif task_id not in self.warned:
                self.warned.add(task_id)
                logger.warning(
                    f"Task {task_id[:8]} queued {waited:.1f}s waiting for a "
                    f"{task.specialization} worker"
                )

    def _start(self, task_id: str, worker: Worker) -> None:
        self.ready.remove(task_id)
        self.waiting_since.pop(task_id, None)
        self.not_before.pop(task_id, None)

        task = self.arena.assign(task_id, worker.id)
        worker.state = WorkerState.ASSIGNED
        worker.current_task = task_id
        child = self.token.child()
        self.inflight[task_id] = (worker, task.attempts, child)

        outcome = self.outcomes[task_id]
        outcome.status = TaskStatus.ASSIGNED
        outcome.attempts = task.attempts
        outcome.workers.append(worker.id)

        assignment = Assignment(
            task_id=task.id,
            description=task.description,
            specialization=task.specialization,
            fingerprint=task.fingerprint,
            attempt=task.attempts,
            hint=task.hint,
        )
        logger.debug(f"Task {task_id[:8]} attempt {task.attempts} -> worker {worker.id}")
        self._pool.submit(worker.execute, assignment, child, self.settings.gateway_timeout)

    def _fail_undispatched(self, task_id: str, error: ColonyError) -> None:
        self.ready.remove(task_id)
        self.waiting_since.pop(task_id, None)
        logger.warning(f"Task {task_id[:8]} failed before dispatch: {error}")
        self._terminal(task_id, TaskStatus.FAILED, error=error)

    # --- Collection ---

    def _claim(self, event: WorkerEvent) -> tuple[Worker, CancellationToken] | None:
        """Match an event to the in-flight attempt it reports on."""
        entry = self.inflight.get(event.task_id)
        if entry is None:
            logger.debug(f"Dropping event for task {event.task_id[:8]} with no attempt in flight")
            return None
        worker, attempt, child = entry
        if worker.id != event.worker_id or attempt != event.attempt:
            logger.debug(f"Dropping stale event from {event.worker_id} attempt {event.attempt}")
            return None
        return worker, child

    def _handle(self, event: WorkerEvent) -> None:
        claimed = self._claim(event)
        if claimed is None:
            return
        worker, _ = claimed
        task_id = event.task_id

        if event.kind == EventKind.STARTED:
            worker.state = WorkerState.RUNNING
            self.arena.set_status(task_id, TaskStatus.RUNNING)
            self.outcomes[task_id].status = TaskStatus.RUNNING
            return

        self._release(task_id, worker, event)
        if event.ok:
            worker.state = WorkerState.SUCCEEDED
            worker.consecutive_failures = 0
            self._terminal(task_id, TaskStatus.SUCCEEDED, result=event.result)
            worker.state = WorkerState.IDLE
            return

        worker.state = WorkerState.FAILED
        error = event.error
        if isinstance(error, Cancelled):
            self._terminal(task_id, TaskStatus.CANCELLED, error=error)
            worker.state = WorkerState.IDLE
            return

        worker.consecutive_failures += 1
        if worker.consecutive_failures >= self.settings.max_worker_failures:
            worker.retired = True
            logger.warning(
                f"Worker {worker.id} retired after {worker.consecutive_failures} "
                f"consecutive failures"
            )
        else:
            worker.state = WorkerState.IDLE
        self.last_failed[task_id] = worker.id
        self._retry_or_fail(task_id, error)

    def _release(self, task_id: str, worker: Worker, event: WorkerEvent) -> None:
        del self.inflight[task_id]
        self.arena.release(task_id, worker.id)
        worker.current_task = None
        outcome = self.outcomes[task_id]
        outcome.trace.extend(event.trace)
        outcome.procedure = event.procedure

    def _retry_or_fail(self, task_id: str, error: BaseException | None) -> None:
        task = self.arena.get(task_id)
        budget = self.settings.retry_budget
        if not _is_retryable(error):
            self._terminal(task_id, TaskStatus.FAILED, error=error)
            return
        if task.attempts > budget:
            failure = WorkerFailure(task_id, task.attempts, str(error) if error else None)
            self._terminal(task_id, TaskStatus.FAILED, error=failure)
            return

        self.retries += 1
        delay = self.settings.backoff(task.attempts)
        self.not_before[task_id] = time.monotonic() + delay
        self.arena.set_status(task_id, TaskStatus.PENDING)
        self.outcomes[task_id].status = TaskStatus.PENDING
        self.ready.append(task_id)
        self.ready.sort(key=lambda tid: self.arena.get(tid).position)
        logger.info(
            f"Retrying task {task_id[:8]} in {delay:.2f}s "
            f"(retry {task.attempts}/{budget}): {error}"
        )

    def _terminal(
        self,
        task_id: str,
        status: TaskStatus,
        result: Any = None,
        error: BaseException | None = None,
    ) -> None:
        self.arena.set_status(task_id, status)
        outcome = self.outcomes[task_id]
        outcome.status = status
        outcome.result = result
        outcome.finished_at = datetime.now(timezone.utc)
        if error is not None:
            outcome.error = _error_detail(error)
        if self.on_task is not None:
            self.on_task(outcome)

    # --- Aggregation and teardown ---

    def _finish(self) -> None:
        self._transition(SessionStatus.AGGREGATING)
        self._transition(self.decision)
        self._cancel_remaining()
        self.arena.rollup()

    def _cancel_remaining(self) -> None:
        if self.cancelled_by_caller:
            reason = "session cancelled"
        else:
            reason = f"session {self.decision.value}"
        for task_id in list(self.ready):
            self.ready.remove(task_id)
            self._terminal(task_id, TaskStatus.CANCELLED, error=Cancelled(reason))

        if not self.inflight:
            return
        for _, _, child in self.inflight.values():
            child.cancel(reason)

        deadline = time.monotonic() + self.settings.cancel_grace_seconds
        while self.inflight:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                event = self.inbox.get(timeout=min(self.settings.poll_interval_seconds, remaining))
            except queue.Empty:
                continue
            self._acknowledge(event, reason)

        for task_id, (worker, _, _) in list(self.inflight.items()):
            logger.warning(
                f"Worker {worker.id} did not acknowledge cancellation of task "
                f"{task_id[:8]} within {self.settings.cancel_grace_seconds:.1f}s"
            )
            del self.inflight[task_id]
            self.arena.release(task_id, worker.id)
            worker.current_task = None
            worker.state = WorkerState.FAILED
            self._terminal(task_id, TaskStatus.CANCELLED, error=Cancelled(reason))

    def _acknowledge(self, event: WorkerEvent, reason: str) -> None:
        """Handle an event that arrives after the session was decided."""
        claimed = self._claim(event)
        if claimed is None:
            return
        worker, _ = claimed
        if event.kind == EventKind.STARTED:
            worker.state = WorkerState.RUNNING
            return
        self._release(event.task_id, worker, event)
        if event.ok:
            logger.debug(f"Discarding late result of task {event.task_id[:8]}")
        worker.state = WorkerState.FAILED
        error = event.error if isinstance(event.error, Cancelled) else Cancelled(reason)
        self._terminal(event.task_id, TaskStatus.CANCELLED, error=error)
