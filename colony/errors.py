"""Exception taxonomy for Colony orchestration."""

from __future__ import annotations

from typing import Any


class ColonyError(Exception):
    """Base exception for Colony operations."""

    retryable: bool = False

    def detail(self) -> dict[str, Any]:
        """Failure-detail payload reported in goal status."""
        return {"error": type(self).__name__, "message": str(self)}


class ConfigError(ColonyError):
    """Raised when configuration values are invalid."""


class EmptyDecomposition(ColonyError):
    """Raised when the router produces no tasks for a goal."""

    def __init__(self, goal_id: str, text: str):
        self.goal_id = goal_id
        self.text = text
        super().__init__(f"Goal {goal_id!r} decomposed into zero tasks")

    def detail(self) -> dict[str, Any]:
        return {**super().detail(), "goal_id": self.goal_id}


class NoWorkerAvailable(ColonyError):
    """Raised when no idle worker of a specialization appears in time."""

    def __init__(self, specialization: str, waited: float):
        self.specialization = specialization
        self.waited = waited
        super().__init__(
            f"No worker available for specialization {specialization!r} after {waited:.2f}s"
        )

    def detail(self) -> dict[str, Any]:
        return {**super().detail(), "specialization": self.specialization, "waited": self.waited}


class GatewayError(ColonyError):
    """A gateway call returned a non-retryable error."""

    def __init__(self, message: str, request_name: str = ""):
        self.request_name = request_name
        super().__init__(message)


class GatewayTimeout(GatewayError):
    """A gateway call exceeded its bounded timeout."""

    retryable = True


class GatewayUnavailable(GatewayError):
    """The gateway transport failed."""

    retryable = True


class WorkerFailure(ColonyError):
    """A task exhausted its retry budget."""

    def __init__(self, task_id: str, attempts: int, last_error: str | None):
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Task {task_id!r} failed after {attempts} attempts: {last_error}")

    def detail(self) -> dict[str, Any]:
        return {
            **super().detail(),
            "task_id": self.task_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


class Cancelled(ColonyError):
    """A worker stopped because its session was cancelled."""


class SessionAborted(ColonyError):
    """The aggregation strategy's failure tolerance was exceeded."""

    def __init__(self, session_id: str, reason: str, failed_tasks: list[str] | None = None):
        self.session_id = session_id
        self.reason = reason
        self.failed_tasks = failed_tasks or []
        super().__init__(f"Session {session_id!r} aborted: {reason}")

    def detail(self) -> dict[str, Any]:
        return {
            **super().detail(),
            "session_id": self.session_id,
            "reason": self.reason,
            "failed_tasks": list(self.failed_tasks),
        }


class MemoryWriteConflict(ColonyError):
    """Concurrent writers raced on the same fingerprint class."""

    retryable = True

    def __init__(self, fingerprint: str, skill_id: str, expected_version: int):
        self.fingerprint = fingerprint
        self.skill_id = skill_id
        self.expected_version = expected_version
        super().__init__(
            f"Skill {skill_id!r} in class {fingerprint[:12]} changed "
            f"underneath writer (expected v{expected_version})"
        )


class RecordConflict(ColonyError):
    """An append reused an existing record id with different content."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Record {record_id!r} already exists with different content")
