"""
Colony Learning Engine

Turns task outcomes into episodic and reflexion records and drives skill
promotion in the memory store.
"""

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone

from colony.config import LearningConfig
from colony.errors import MemoryWriteConflict
from colony.learning.critique import Critic, HeuristicCritic
from colony.logging import get_logger
from colony.memory.consolidation import ConsolidationScheduler
from colony.memory.records import EpisodicRecord, Outcome, ReflexionRecord
from colony.memory.store import MemoryStore, PromotionResult
from colony.swarm.models import TaskOutcome
from colony.tasks import Task, TaskStatus

logger = get_logger("learning.engine")

_RECORD_NAMESPACE = uuid.UUID("5f0c3c1e-7d1a-4a8e-9a57-6b1f1c0d2e3a")


def _record_id(kind: str, session_id: str, task_id: str) -> str:
    return str(uuid.uuid5(_RECORD_NAMESPACE, f"{kind}:{session_id}:{task_id}"))


def encode_trace(task: Task, execution: TaskOutcome, session_id: str) -> bytes:
    """Serialize a task execution as the episodic payload."""
    data = {
        "session_id": session_id,
        "task": task.to_dict(),
        "execution": execution.to_dict(),
    }
    return json.dumps(data, sort_keys=True, default=str).encode("utf-8")


class LearningEngine:
    """
    Learns from completed tasks.

    Every terminal task produces an episodic record. Succeeded and failed
    tasks also produce a reflexion, after which the task's fingerprint class
    is evaluated for promotion.
    """

    def __init__(
        self,
        memory: MemoryStore,
        config: LearningConfig | None = None,
        critic: Critic | None = None,
    ):
        self.memory = memory
        self.config = config or LearningConfig()
        self.critic: Critic = critic or HeuristicCritic()
        self.scheduler = ConsolidationScheduler(memory)
        self._promotions = 0
        self._promotions_lock = threading.Lock()
        logger.info(f"LearningEngine initialized with {type(self.critic).__name__}")

    # --- Background consolidation ---

    def start(self) -> None:
        if self.config.consolidation_interval_hours > 0:
            self.scheduler.start(self.config.consolidation_interval_hours)

    def stop(self) -> None:
        self.scheduler.stop()

    # --- Recording ---

    def _episode(self, task: Task, execution: TaskOutcome, session_id: str) -> EpisodicRecord:
        timestamp = execution.finished_at or datetime.now(timezone.utc)
        record = EpisodicRecord(
            id=_record_id("episode", session_id, task.id),
            session_id=session_id,
            task_id=task.id,
            timestamp=timestamp,
            embedding=self.memory.embed(f"{task.specialization} {task.description}"),
            payload=encode_trace(task, execution, session_id),
            fingerprint=task.fingerprint,
        )
        return self.memory.append(record)

    def reflect(
        self,
        task: Task,
        trace: TaskOutcome,
        outcome: Outcome,
        session_id: str = "",
    ) -> ReflexionRecord:
        """Record an execution and its critique, then evaluate promotion.

        Args:
            task: The task as routed.
            trace: What the swarm recorded while executing it.
            outcome: Success or failure.
            session_id: Swarm session that ran the task.

        Returns:
            The appended reflexion record.
        """
        episode = self._episode(task, trace, session_id)
        reflexion = ReflexionRecord(
            id=_record_id("reflexion", session_id, task.id),
            fingerprint=task.fingerprint,
            outcome=outcome,
            critique=self.critic.critique(task, trace, outcome),
            embedding=episode.embedding,
            episodic_id=episode.id,
            timestamp=episode.timestamp,
            task_id=task.id,
            specialization=task.specialization,
            description=task.description,
            procedure=trace.procedure,
            skill_id=task.hint.skill_id if task.hint else None,
        )
        reflexion = self.memory.append(reflexion)
        logger.debug(f"Reflexion {reflexion.id[:8]} ({outcome.value}) for task {task.id[:8]}")
        self.promote(task.fingerprint)
        return reflexion

    def record_outcome(
        self, task: Task, execution: TaskOutcome, session_id: str = ""
    ) -> ReflexionRecord | None:
        """Learn from one terminal task.

        Cancelled tasks leave an episodic record only; their outcome says
        nothing about the procedure.
        """
        if execution.status == TaskStatus.SUCCEEDED:
            return self.reflect(task, execution, Outcome.SUCCESS, session_id)
        if execution.status == TaskStatus.FAILED:
            return self.reflect(task, execution, Outcome.FAILURE, session_id)
        if execution.status == TaskStatus.CANCELLED:
            self._episode(task, execution, session_id)
            return None
        raise ValueError(f"Task {task.id!r} is not terminal ({execution.status.value})")

    # --- Promotion ---

    def promote(self, fingerprint: str) -> PromotionResult | None:
        try:
            result = self.memory.promote(fingerprint)
        except MemoryWriteConflict as e:
            logger.warning(f"Promotion skipped for class {fingerprint[:12]}: {e}")
            return None
        if result.noop:
            return result

        every = self.config.consolidate_every
        with self._promotions_lock:
            self._promotions += 1
            count = self._promotions
        if every > 0 and count % every == 0:
            merges = self.memory.consolidate(fingerprint)
            logger.info(f"Consolidation after {count} promotions: {len(merges)} merges")
        return result
