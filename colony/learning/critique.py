"""Critics turn a task execution into reflexion text."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from colony.gateway.models import GatewayRequest, RequestKind
from colony.logging import get_logger
from colony.memory.records import Outcome
from colony.protocols.gateway import Gateway
from colony.swarm.models import TaskOutcome
from colony.tasks import Task

logger = get_logger("learning.critique")

CRITIC_SYSTEM = (
    "You review the execution of a single task by an agent. In two or three "
    "sentences, state what made it succeed or fail and what to repeat or avoid."
)


@runtime_checkable
class Critic(Protocol):
    """Produces a critique of one task execution."""

    def critique(self, task: Task, execution: TaskOutcome, outcome: Outcome) -> str: ...


class HeuristicCritic:
    """Deterministic critique built from the execution trace."""

    def critique(self, task: Task, execution: TaskOutcome, outcome: Outcome) -> str:
        attempts = execution.attempts
        plural = "s" if attempts != 1 else ""
        setbacks = [step for step in execution.trace if step.status != "ok"]
        parts: list[str] = []

        if outcome == Outcome.SUCCESS:
            parts.append(
                f"Succeeded via {execution.procedure or 'no gateway calls'} "
                f"after {attempts} attempt{plural}."
            )
        else:
            error = execution.error or {}
            message = error.get("message") or error.get("error") or "unknown error"
            parts.append(
                f"Failed via {execution.procedure or 'no gateway calls'} "
                f"after {attempts} attempt{plural}: {message}."
            )

        if setbacks:
            kinds: dict[str, int] = {}
            for step in setbacks:
                kinds[step.status] = kinds.get(step.status, 0) + 1
            summary = ", ".join(f"{count} {status}" for status, count in sorted(kinds.items()))
            parts.append(f"Gateway setbacks: {summary}.")

        if task.hint is not None:
            parts.append(f"Guided by skill {task.hint.skill_name}.")
        return " ".join(parts)


class ModelCritic:
    """Asks the gateway model for a critique, falling back to the heuristic."""

    def __init__(
        self,
        gateway: Gateway,
        model_name: str = "default",
        timeout: float = 30.0,
        fallback: Critic | None = None,
    ):
        self.gateway = gateway
        self.model_name = model_name
        self.timeout = timeout
        self.fallback = fallback or HeuristicCritic()

    def _prompt(self, task: Task, execution: TaskOutcome, outcome: Outcome) -> str:
        steps = "\n".join(
            f"- attempt {s.attempt} {s.request}: {s.status}" + (f" ({s.error})" if s.error else "")
            for s in execution.trace
        )
        return (
            f"Task ({task.specialization}): {task.description}\n"
            f"Outcome: {outcome.value}\n"
            f"Attempts: {execution.attempts}\n"
            f"Steps:\n{steps or '- none'}\n"
            f"Result: {execution.result if execution.result is not None else execution.error}"
        )

    def critique(self, task: Task, execution: TaskOutcome, outcome: Outcome) -> str:
        request = GatewayRequest(
            kind=RequestKind.MODEL,
            name=self.model_name,
            arguments={
                "prompt": self._prompt(task, execution, outcome),
                "system": CRITIC_SYSTEM,
            },
            timeout=self.timeout,
        )
        response = self.gateway.invoke(request)
        if response.ok and isinstance(response.payload, str) and response.payload.strip():
            return response.payload.strip()
        logger.warning(
            f"Model critique unavailable ({response.status.value}), using heuristic critique"
        )
        return self.fallback.critique(task, execution, outcome)
