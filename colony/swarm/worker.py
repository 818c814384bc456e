"""Swarm workers and the specialization profiles they execute."""

from __future__ import annotations

import queue
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any

from colony.errors import Cancelled, GatewayError
from colony.gateway.models import GatewayRequest, GatewayResponse, RequestKind
from colony.logging import get_logger
from colony.protocols.gateway import Gateway
from colony.swarm.models import Assignment, EventKind, TraceStep, WorkerEvent, WorkerState
from colony.swarm.tokens import CancellationToken

logger = get_logger("swarm.worker")

DEFAULT_PROMPT = "[{specialization}] {description}{hint}{previous}"
DEFAULT_SYSTEM = "You are a {specialization} agent in a cooperative swarm. Complete the task."


class _Context(dict):
    """format_map mapping that leaves unknown fields empty."""

    def __missing__(self, key: str) -> str:
        return ""


@dataclass(frozen=True)
class GatewayStep:
    """One gateway call in a specialization's procedure.

    String argument values are templates over ``description``,
    ``specialization``, ``hint``, ``previous`` and ``skill``.
    """

    kind: RequestKind
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.kind.value}:{self.name}"

    def request(self, context: dict[str, str], timeout: float) -> GatewayRequest:
        rendered = {
            key: value.format_map(_Context(context)) if isinstance(value, str) else value
            for key, value in self.arguments.items()
        }
        return GatewayRequest(kind=self.kind, name=self.name, arguments=rendered, timeout=timeout)


@dataclass(frozen=True)
class SpecializationProfile:
    """
    What a worker of one specialization does with a task.

    Profiles are data, not subclasses: the closed set of shapes is built by
    ``model``, ``tool`` and ``tool_then_model``.
    """

    specialization: str
    steps: tuple[GatewayStep, ...]

    @property
    def procedure(self) -> str:
        """The planned call sequence, independent of how an attempt ends."""
        return " -> ".join(step.describe() for step in self.steps)

    @classmethod
    def model(cls, specialization: str, model_name: str = "default") -> SpecializationProfile:
        return cls(
            specialization,
            (
                GatewayStep(
                    RequestKind.MODEL,
                    model_name,
                    {"prompt": DEFAULT_PROMPT, "system": DEFAULT_SYSTEM},
                ),
            ),
        )

    @classmethod
    def tool(cls, specialization: str, tool_name: str) -> SpecializationProfile:
        return cls(
            specialization,
            (GatewayStep(RequestKind.TOOL, tool_name, {"input": "{description}"}),),
        )

    @classmethod
    def tool_then_model(
        cls, specialization: str, tool_name: str, model_name: str = "default"
    ) -> SpecializationProfile:
        return cls(
            specialization,
            (
                GatewayStep(RequestKind.TOOL, tool_name, {"input": "{description}"}),
                GatewayStep(
                    RequestKind.MODEL,
                    model_name,
                    {"prompt": DEFAULT_PROMPT, "system": DEFAULT_SYSTEM},
                ),
            ),
        )


def _hint_text(assignment: Assignment) -> str:
    hint = assignment.hint
    if hint is None:
        return ""
    return (
        f"\n\nA procedure that worked before ({hint.skill_name}, "
        f"success rate {hint.success_rate:.0%}):\n{hint.template}"
    )


class Worker:
    """
    Executes one task attempt at a time through the gateway.

    The coordinator owns ``state``; the worker itself only reads its
    assignment and token and reports back over the outbox queue.
    """

    def __init__(
        self,
        worker_id: str,
        profile: SpecializationProfile,
        gateway: Gateway,
        outbox: queue.Queue[WorkerEvent],
        calls: Executor,
        poll_interval: float = 0.05,
    ):
        self.id = worker_id
        self.profile = profile
        self.gateway = gateway
        self._outbox = outbox
        self._calls = calls
        self._poll_interval = poll_interval
        self.state = WorkerState.IDLE
        self.current_task: str | None = None
        self.consecutive_failures = 0
        self.retired = False

    @property
    def specialization(self) -> str:
        return self.profile.specialization

    @property
    def available(self) -> bool:
        return self.state == WorkerState.IDLE and not self.retired

    def _invoke(self, request: GatewayRequest, token: CancellationToken) -> GatewayResponse:
        """Call the gateway, abandoning the call if the token fires first."""
        future = self._calls.submit(self.gateway.invoke, request)
        while True:
            try:
                return future.result(timeout=self._poll_interval)
            except FuturesTimeout:
                if token.cancelled:
                    future.cancel()
                    logger.debug(f"Worker {self.id} abandoned {request.describe()}")
                    raise Cancelled(token.reason or "cancelled") from None

    def execute(self, assignment: Assignment, token: CancellationToken, timeout: float) -> None:
        """Run one attempt of ``assignment`` and report the outcome."""
        self._outbox.put(
            WorkerEvent(EventKind.STARTED, self.id, assignment.task_id, assignment.attempt)
        )
        event = WorkerEvent(
            EventKind.FINISHED,
            self.id,
            assignment.task_id,
            assignment.attempt,
            procedure=self.profile.procedure,
        )
        context = {
            "description": assignment.description,
            "specialization": assignment.specialization,
            "hint": _hint_text(assignment),
            "skill": assignment.hint.skill_name if assignment.hint else "",
            "previous": "",
        }
        result: Any = None
        try:
            for index, step in enumerate(self.profile.steps):
                token.raise_if_cancelled()
                request = step.request(context, timeout)
                response = self._invoke(request, token)
                event.trace.append(
                    TraceStep.from_call(assignment.attempt, index, request, response)
                )
                response.raise_for_status(request.name)
                result = response.payload
                context["previous"] = f"\n\nInput:\n{result}"
            event.ok = True
            event.result = result
        except (Cancelled, GatewayError) as exc:
            event.error = exc
        except Exception as exc:
            logger.error(f"Worker {self.id} crashed on task {assignment.task_id}: {exc}")
            event.error = exc
        self._outbox.put(event)
