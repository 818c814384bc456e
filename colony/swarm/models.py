"""Data models for Colony swarm sessions."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from colony.config import AGGREGATION_STRATEGIES, GoalOptions, SwarmConfig
from colony.errors import ConfigError, SessionAborted
from colony.gateway.models import GatewayRequest, GatewayResponse
from colony.tasks import SkillHint, TaskStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkerState(Enum):
    """Worker lifecycle: idle → assigned → running → {succeeded, failed}."""

    IDLE = "idle"
    ASSIGNED = "assigned"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SessionStatus(Enum):
    """Session lifecycle: forming → dispatching → collecting → aggregating → end."""

    FORMING = "forming"
    DISPATCHING = "dispatching"
    COLLECTING = "collecting"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.PARTIAL, SessionStatus.ABORTED)


class AggregationStrategy(Enum):
    """How task outcomes combine into a session outcome."""

    ALL = "all"
    QUORUM = "quorum"
    FIRST_SUCCESS = "first_success"


class EventKind(Enum):
    """Messages a worker sends to its coordinator."""

    STARTED = "started"
    FINISHED = "finished"


@dataclass(frozen=True)
class SessionSettings:
    """Effective settings of one session: config defaults plus goal overrides."""

    aggregation: AggregationStrategy = AggregationStrategy.ALL
    quorum_fraction: float = 0.5
    allow_partial: bool = True
    retry_budget: int = 2
    retry_backoff_seconds: float = 0.5
    dispatch_wait_seconds: float = 5.0
    no_worker_policy: str = "queue"
    cancel_grace_seconds: float = 5.0
    max_worker_failures: int = 3
    poll_interval_seconds: float = 0.05
    workers_per_specialization: int = 2
    workers: dict[str, int] = field(default_factory=dict)
    gateway_timeout: float = 30.0

    @classmethod
    def resolve(
        cls,
        config: SwarmConfig,
        options: GoalOptions | None = None,
        gateway_timeout: float = 30.0,
    ) -> SessionSettings:
        """Apply per-goal overrides on top of the swarm configuration."""
        options = options or GoalOptions()
        config.validate()
        aggregation = options.aggregation or config.aggregation
        if aggregation not in AGGREGATION_STRATEGIES:
            raise ConfigError(f"Unknown aggregation strategy {aggregation!r}")
        quorum_fraction = (
            options.quorum_fraction
            if options.quorum_fraction is not None
            else config.quorum_fraction
        )
        if not 0.0 < quorum_fraction <= 1.0:
            raise ConfigError(f"quorum_fraction must be in (0, 1], got {quorum_fraction}")
        retry_budget = (
            options.retry_budget if options.retry_budget is not None else config.retry_budget
        )
        if retry_budget < 0:
            raise ConfigError("retry_budget must be >= 0")
        return cls(
            aggregation=AggregationStrategy(aggregation),
            quorum_fraction=quorum_fraction,
            allow_partial=(
                options.allow_partial if options.allow_partial is not None else config.allow_partial
            ),
            retry_budget=retry_budget,
            retry_backoff_seconds=config.retry_backoff_seconds,
            dispatch_wait_seconds=config.dispatch_wait_seconds,
            no_worker_policy=config.no_worker_policy,
            cancel_grace_seconds=config.cancel_grace_seconds,
            max_worker_failures=config.max_worker_failures,
            poll_interval_seconds=config.poll_interval_seconds,
            workers_per_specialization=config.workers_per_specialization,
            workers=dict(options.workers),
            gateway_timeout=gateway_timeout,
        )

    def quorum_required(self, total: int) -> int:
        """Successes needed to satisfy a quorum over ``total`` tasks."""
        # Tolerance keeps fractions like 2/3 from rounding past an integer
        return max(1, math.ceil(self.quorum_fraction * total - 1e-9))

    def backoff(self, retry_number: int) -> float:
        return self.retry_backoff_seconds * (2 ** (retry_number - 1))

    def worker_count(self, specialization: str) -> int:
        return self.workers.get(specialization, self.workers_per_specialization)


@dataclass(frozen=True)
class Assignment:
    """Immutable view of a task handed to a worker for one attempt."""

    task_id: str
    description: str
    specialization: str
    fingerprint: str
    attempt: int
    hint: SkillHint | None = None


@dataclass(frozen=True)
class TraceStep:
    """One gateway call made while executing a task."""

    attempt: int
    index: int
    request: str
    status: str
    latency: float
    error: str | None = None
    timestamp: datetime = field(default_factory=_now)

    @classmethod
    def from_call(
        cls, attempt: int, index: int, request: GatewayRequest, response: GatewayResponse
    ) -> TraceStep:
        return cls(
            attempt=attempt,
            index=index,
            request=request.describe(),
            status=response.status.value,
            latency=response.latency,
            error=response.error_detail,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "index": self.index,
            "request": self.request,
            "status": self.status,
            "latency": self.latency,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class WorkerEvent:
    """A message on the worker → coordinator channel."""

    kind: EventKind
    worker_id: str
    task_id: str
    attempt: int
    ok: bool = False
    result: Any = None
    error: BaseException | None = None
    trace: list[TraceStep] = field(default_factory=list)
    procedure: str = ""


@dataclass
class TaskOutcome:
    """Accumulated outcome of one task across all of its attempts."""

    task_id: str
    description: str
    specialization: str
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: dict[str, Any] | None = None
    attempts: int = 0
    workers: list[str] = field(default_factory=list)
    trace: list[TraceStep] = field(default_factory=list)
    procedure: str = ""
    skill_id: str | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "description": self.description,
            "specialization": self.specialization,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "attempts": self.attempts,
            "workers": list(self.workers),
            "trace": [step.to_dict() for step in self.trace],
            "procedure": self.procedure,
            "skill_id": self.skill_id,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class SessionResult:
    """Aggregated result of a swarm session."""

    session_id: str
    goal_id: str
    strategy: AggregationStrategy
    status: SessionStatus
    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)
    results: list[Any] = field(default_factory=list)
    retries: int = 0
    history: list[tuple[SessionStatus, datetime]] = field(default_factory=list)
    cancelled_by_caller: bool = False
    error: SessionAborted | None = None

    @property
    def dispatched(self) -> int:
        return len(self.outcomes)

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for outcome in self.outcomes.values():
            counts[outcome.status.value] += 1
        return counts

    def failure_detail(self) -> dict[str, Any] | None:
        return self.error.detail() if self.error else None

    def raise_for_status(self) -> None:
        """Raise SessionAborted when the session did not complete."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "goal_id": self.goal_id,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "counts": self.counts(),
            "retries": self.retries,
            "results": list(self.results),
            "history": [(s.value, ts.isoformat()) for s, ts in self.history],
            "failure": self.failure_detail(),
            "tasks": {tid: o.to_dict() for tid, o in self.outcomes.items()},
        }
