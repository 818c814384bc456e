"""
Colony Goals and Tasks

Goals are decomposed into a tree of tasks. Tasks live in an arena keyed by
id; parent links are ids, never object references.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from colony.logging import get_logger

logger = get_logger("tasks")

_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


class GoalStatus(Enum):
    """Goal lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (GoalStatus.DONE, GoalStatus.FAILED, GoalStatus.CANCELLED)


class TaskStatus(Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)


def normalize_description(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    text = _NON_WORD.sub(" ", text.lower())
    return _SPACES.sub(" ", text).strip()


def fingerprint(description: str, specialization: str) -> str:
    """Hash of the normalized description and specialization.

    Equivalent tasks from different sessions share a fingerprint, which is
    the key of their fingerprint class in memory.
    """
    key = f"{specialization.strip().lower()}\x1f{normalize_description(description)}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


@dataclass
class Goal:
    """A unit of work submitted to the orchestrator."""

    id: str
    text: str
    submitted_at: datetime
    status: GoalStatus = GoalStatus.PENDING

    @classmethod
    def new(cls, text: str) -> Goal:
        return cls(
            id=str(uuid.uuid4()),
            text=text,
            submitted_at=datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class SkillHint:
    """Procedure template attached to a task on the warm path."""

    skill_id: str
    skill_name: str
    template: str
    success_rate: float


@dataclass
class Task:
    """A single subtask of a goal."""

    id: str
    goal_id: str
    description: str
    specialization: str
    parent_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    hint: SkillHint | None = None
    fingerprint: str = ""
    position: int = 0

    def __post_init__(self):
        if not self.fingerprint:
            self.fingerprint = fingerprint(self.description, self.specialization)

    @property
    def warm(self) -> bool:
        """True when routed with a skill hint."""
        return self.hint is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "goal_id": self.goal_id,
            "description": self.description,
            "specialization": self.specialization,
            "parent_id": self.parent_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "fingerprint": self.fingerprint,
            "skill": self.hint.skill_name if self.hint else None,
        }


class TaskArena:
    """
    Owns every task of one goal, indexed by id.

    Tracks the single active owner of each task. Not thread-safe: an arena
    belongs to exactly one swarm session and is mutated only by its
    coordinator loop.
    """

    def __init__(self, tasks: list[Task] | None = None):
        self._tasks: dict[str, Task] = {}
        self._order: list[str] = []
        self._owners: dict[str, str] = {}
        for task in tasks or []:
            self.add(task)

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return (self._tasks[task_id] for task_id in self._order)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def add(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise ValueError(f"Task {task.id!r} already in arena")
        if task.parent_id is not None and task.parent_id not in self._tasks:
            raise ValueError(f"Parent {task.parent_id!r} of task {task.id!r} not in arena")
        task.position = len(self._order)
        self._tasks[task.id] = task
        self._order.append(task.id)
        return task

    def get(self, task_id: str) -> Task:
        return self._tasks[task_id]

    def children(self, task_id: str) -> list[Task]:
        return [t for t in self if t.parent_id == task_id]

    def roots(self) -> list[Task]:
        return [t for t in self if t.parent_id is None]

    def leaves(self) -> list[Task]:
        """Tasks with no children; these are the ones dispatched to workers."""
        parents = {t.parent_id for t in self if t.parent_id is not None}
        return [t for t in self if t.id not in parents]

    def ancestors(self, task_id: str) -> list[str]:
        chain: list[str] = []
        parent = self._tasks[task_id].parent_id
        while parent is not None:
            chain.append(parent)
            parent = self._tasks[parent].parent_id
        return chain

    # --- Ownership ---

    def owner(self, task_id: str) -> str | None:
        return self._owners.get(task_id)

    def assign(self, task_id: str, worker_id: str) -> Task:
        """Give a task to a worker. A task has at most one owner at a time."""
        current = self._owners.get(task_id)
        if current is not None:
            raise RuntimeError(f"Task {task_id!r} already owned by worker {current!r}")
        task = self._tasks[task_id]
        if task.status.terminal:
            raise RuntimeError(f"Task {task_id!r} is already {task.status.value}")
        self._owners[task_id] = worker_id
        task.status = TaskStatus.ASSIGNED
        task.attempts += 1
        return task

    def release(self, task_id: str, worker_id: str) -> None:
        if self._owners.get(task_id) != worker_id:
            raise RuntimeError(f"Worker {worker_id!r} does not own task {task_id!r}")
        del self._owners[task_id]

    def set_status(self, task_id: str, status: TaskStatus) -> None:
        task = self._tasks[task_id]
        if task.status.terminal and status != task.status:
            raise RuntimeError(
                f"Task {task_id!r} is terminal ({task.status.value}); cannot move to {status.value}"
            )
        task.status = status

    def rollup(self) -> None:
        """Derive parent task status from their children, deepest first."""
        for task in reversed(list(self)):
            kids = self.children(task.id)
            if not kids:
                continue
            states = {k.status for k in kids}
            if not all(s.terminal for s in states):
                task.status = TaskStatus.RUNNING
            elif states == {TaskStatus.SUCCEEDED}:
                task.status = TaskStatus.SUCCEEDED
            elif TaskStatus.FAILED in states:
                task.status = TaskStatus.FAILED
            else:
                task.status = TaskStatus.CANCELLED

    def counts(self, leaves_only: bool = True) -> dict[str, int]:
        tasks = self.leaves() if leaves_only else list(self)
        counts = {status.value: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1
        return counts
