"""
Colony Memory Store

Append-only episodic and reflexion layers plus a skill layer, with blended
similarity retrieval. One store is created per process and passed by
reference to every component that needs it.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path

from colony.config import LearningConfig, MemoryConfig
from colony.errors import MemoryWriteConflict
from colony.logging import get_logger
from colony.memory.backends import InMemoryBackend, SQLiteBackend
from colony.memory.promotion import PromotionPolicy
from colony.memory.records import (
    AnyRecord,
    EpisodicRecord,
    MemoryLayer,
    Precondition,
    ReflexionRecord,
    Skill,
    SkillStatus,
    record_from_schema,
    skill_name,
)
from colony.memory.similarity import CosineIndex, HashingEmbedder, sequence_similarity
from colony.protocols.memory import Embedder, MemoryBackend, SimilarityIndex, TemplateSimilarity

logger = get_logger("memory.store")

_SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class ScoredRecord:
    """A query hit with its blended score."""

    record: AnyRecord
    score: float
    similarity: float


@dataclass(frozen=True)
class PromotionResult:
    """What a promotion pass wrote."""

    fingerprint: str
    created: list[Skill]
    updated: list[Skill]

    @property
    def noop(self) -> bool:
        return not self.created and not self.updated


@dataclass(frozen=True)
class MergeResult:
    """A consolidation merge of ``absorbed`` into ``survivor``."""

    fingerprint: str
    survivor: Skill
    absorbed: Skill


def _absorbed_into(skill_id: str, skills: list[Skill]) -> set[str]:
    """Ids of skills merged, directly or transitively, into ``skill_id``."""
    absorbed: set[str] = set()
    frontier = {skill_id}
    while frontier:
        frontier = {s.id for s in skills if s.merged_into in frontier} - absorbed
        absorbed |= frontier
    return absorbed


class MemoryStore:
    """
    Three-layer memory with per-class single-writer promotion.

    Writes for a fingerprint class (reflexion appends, promotion,
    consolidation) hold that class's lock, so they are linearized; writes for
    different classes proceed independently.
    """

    def __init__(
        self,
        backend: MemoryBackend | None = None,
        config: MemoryConfig | None = None,
        learning: LearningConfig | None = None,
        embedder: Embedder | None = None,
        index: SimilarityIndex | None = None,
        template_similarity: TemplateSimilarity = sequence_similarity,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or MemoryConfig()
        learning = learning or LearningConfig()
        self.backend: MemoryBackend = backend or InMemoryBackend()
        self.embedder: Embedder = embedder or HashingEmbedder(self.config.embedding_dim)
        self.index: SimilarityIndex = index or CosineIndex()
        self.template_similarity = template_similarity
        self.policy = PromotionPolicy(
            threshold=learning.promotion_threshold,
            variant_threshold=learning.variant_threshold,
            similarity=template_similarity,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._class_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._closed = False
        logger.info(f"MemoryStore initialized with {type(self.backend).__name__}")

    @classmethod
    def open(
        cls,
        data_dir: Path | None = None,
        config: MemoryConfig | None = None,
        learning: LearningConfig | None = None,
        **kwargs,
    ) -> MemoryStore:
        """Create a store with the backend named in ``config``."""
        config = config or MemoryConfig()
        if config.backend == "sqlite" and data_dir is not None:
            backend: MemoryBackend = SQLiteBackend(data_dir / config.db_name)
        else:
            if config.backend == "sqlite":
                logger.warning("No data directory for SQLite memory, using in-memory backend")
            backend = InMemoryBackend()
        return cls(backend=backend, config=config, learning=learning, **kwargs)

    def close(self) -> None:
        if not self._closed:
            self.backend.close()
            self._closed = True
            logger.info("MemoryStore closed")

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def now(self) -> datetime:
        return self._clock()

    def embed(self, text: str) -> tuple[float, ...]:
        return self.embedder.embed(text)

    # --- Locking ---

    def _lock_for(self, fingerprint: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._class_locks.get(fingerprint)
            if lock is None:
                lock = self._class_locks[fingerprint] = threading.Lock()
            return lock

    @contextmanager
    def class_lock(self, fingerprint: str) -> Iterator[None]:
        """Hold the single-writer lock for one fingerprint class."""
        lock = self._lock_for(fingerprint)
        for attempt in range(1, self.config.write_retries + 1):
            if lock.acquire(timeout=self.config.lock_timeout_seconds):
                break
            logger.warning(
                f"Writer for class {fingerprint[:12]} still busy after "
                f"{self.config.lock_timeout_seconds}s (attempt {attempt})"
            )
        else:
            raise MemoryWriteConflict(fingerprint, "", 0)
        try:
            yield
        finally:
            lock.release()

    # --- Append / read ---

    def append(self, record: EpisodicRecord | ReflexionRecord) -> EpisodicRecord | ReflexionRecord:
        """Append an immutable record and return it with its sequence number.

        Re-appending an identical record is a no-op; reusing an id for
        different content raises RecordConflict.
        """
        if isinstance(record, Skill):
            raise TypeError("Skills are written by promotion, not appended")
        if isinstance(record, ReflexionRecord):
            with self.class_lock(record.fingerprint):
                seq, created = self.backend.append(record.to_schema())
        else:
            seq, created = self.backend.append(record.to_schema())
        if created:
            logger.debug(f"Appended {record.layer.value} record {record.id[:8]} seq={seq}")
        return replace(record, seq=seq)

    def get(self, record_id: str) -> AnyRecord | None:
        schema = self.backend.get(record_id)
        return record_from_schema(schema) if schema else None

    def episodes(self) -> list[EpisodicRecord]:
        return [EpisodicRecord.from_schema(s) for s in self.backend.records(MemoryLayer.EPISODIC)]

    def reflexions_for(self, fingerprint: str) -> list[ReflexionRecord]:
        return [
            ReflexionRecord.from_schema(s)
            for s in self.backend.records(MemoryLayer.REFLEXION, fingerprint)
        ]

    def skills_for(self, fingerprint: str, include_merged: bool = False) -> list[Skill]:
        skills = [Skill.from_schema(s) for s in self.backend.skill_heads(fingerprint)]
        if not include_merged:
            skills = [s for s in skills if s.active]
        return sorted(skills, key=lambda s: (s.created_seq, s.id))

    def all_skills(self, include_merged: bool = False) -> list[Skill]:
        skills = [Skill.from_schema(s) for s in self.backend.skill_heads()]
        if not include_merged:
            skills = [s for s in skills if s.active]
        return sorted(skills, key=lambda s: (s.fingerprint, s.created_seq, s.id))

    def skill_history(self, skill_id: str) -> list[Skill]:
        return [Skill.from_schema(s) for s in self.backend.skill_history(skill_id)]

    def best_skill(self, fingerprint: str) -> Skill | None:
        """Highest success-rate active skill of a class (oldest wins ties)."""
        skills = self.skills_for(fingerprint)
        if not skills:
            return None
        return max(skills, key=lambda s: (s.success_rate, -s.created_seq))

    # --- Query ---

    def _candidates(self, layer: MemoryLayer) -> list[AnyRecord]:
        if layer == MemoryLayer.SKILL:
            return self.all_skills()
        return [record_from_schema(s) for s in self.backend.records(layer)]

    def query(
        self,
        embedding: tuple[float, ...] | list[float],
        layer: MemoryLayer,
        k: int = 5,
        now: datetime | None = None,
    ) -> list[ScoredRecord]:
        """Return the k best records of a layer.

        Score = similarity^w_s × recency^w_r × success_rate^w_k, where the
        success factor applies to skills only and recency halves every
        ``recency_half_life_hours``. Equal scores order by most recent
        timestamp, then by record id.
        """
        if k <= 0:
            return []
        candidates = self._candidates(layer)
        if not candidates:
            return []
        now = now or self.now()
        sims = self.index.similarities(embedding, [c.embedding for c in candidates])
        cfg = self.config
        hits: list[ScoredRecord] = []
        for record, sim in zip(candidates, sims):
            sim = max(sim, 0.0)
            age_hours = max((now - record.timestamp).total_seconds(), 0.0) / _SECONDS_PER_HOUR
            recency = 0.5 ** (age_hours / cfg.recency_half_life_hours)
            success = record.success_rate if isinstance(record, Skill) else 1.0
            score = (
                sim**cfg.similarity_weight
                * recency**cfg.recency_weight
                * success**cfg.success_weight
            )
            hits.append(ScoredRecord(record=record, score=score, similarity=sim))
        hits.sort(key=lambda h: (-h.score, -h.record.timestamp.timestamp(), h.record.id))
        return hits[:k]

    # --- Promotion ---

    def promote(self, fingerprint: str) -> PromotionResult:
        """Create or update skills for a class from its accumulated reflexions."""
        for attempt in range(1, self.config.write_retries + 1):
            try:
                with self.class_lock(fingerprint):
                    return self._promote_locked(fingerprint)
            except MemoryWriteConflict as exc:
                logger.warning(f"Promotion conflict (attempt {attempt}): {exc}")
        logger.error(f"Promotion for class {fingerprint[:12]} gave up after conflicts")
        return PromotionResult(fingerprint, [], [])

    def _promote_locked(self, fingerprint: str) -> PromotionResult:
        reflexions = self.reflexions_for(fingerprint)
        skills = self.skills_for(fingerprint, include_merged=True)
        decision = self.policy.evaluate(skills, reflexions)
        if decision.noop:
            return PromotionResult(fingerprint, [], [])

        by_id = {r.id: r for r in reflexions}
        heads = {s.id: s for s in skills}
        updated: list[Skill] = []
        for skill_id, extra in decision.updates.items():
            head = heads[skill_id]
            new = head.with_provenance(extra, by_id, _absorbed_into(skill_id, skills))
            self.backend.write_skill(new.to_schema(), expected_version=head.version)
            updated.append(new)
            logger.info(
                f"Skill {new.name!r} v{new.version}: +{len(extra)} provenance, "
                f"success_rate={new.success_rate:.2f}"
            )

        created: list[Skill] = []
        ordinal = len(skills)
        for cluster in decision.creations:
            ordinal += 1
            skill = self._new_skill(fingerprint, cluster, ordinal, by_id)
            self.backend.write_skill(skill.to_schema(), expected_version=0)
            created.append(skill)
            logger.info(
                f"Promoted skill {skill.name!r} from {len(cluster)} reflexions "
                f"(success_rate={skill.success_rate:.2f})"
            )
        return PromotionResult(fingerprint, created, updated)

    def _new_skill(
        self,
        fingerprint: str,
        cluster: list[ReflexionRecord],
        ordinal: int,
        by_id: dict[str, ReflexionRecord],
    ) -> Skill:
        first = cluster[0]
        skill = Skill(
            id=f"skill-{fingerprint[:12]}-{ordinal}",
            name=skill_name(first.specialization, first.description),
            fingerprint=fingerprint,
            precondition=Precondition.from_description(first.specialization, first.description),
            template=first.procedure,
            embedding=self.embed(f"{first.specialization} {first.description}"),
            timestamp=max(r.timestamp for r in cluster),
            provenance=[r.id for r in cluster],
            version=1,
            created_seq=first.seq,
        )
        skill.recompute(by_id)
        return skill

    # --- Consolidation ---

    def consolidate(self, fingerprint: str | None = None) -> list[MergeResult]:
        """Merge near-duplicate skills within each fingerprint class."""
        if fingerprint is None:
            classes = sorted({s.fingerprint for s in self.all_skills()})
        else:
            classes = [fingerprint]
        merges: list[MergeResult] = []
        for fp in classes:
            for attempt in range(1, self.config.write_retries + 1):
                try:
                    with self.class_lock(fp):
                        merges.extend(self._consolidate_locked(fp))
                    break
                except MemoryWriteConflict as exc:
                    logger.warning(f"Consolidation conflict (attempt {attempt}): {exc}")
        if merges:
            logger.info(f"Consolidation merged {len(merges)} skills")
        return merges

    def _consolidate_locked(self, fingerprint: str) -> list[MergeResult]:
        history = self.skills_for(fingerprint, include_merged=True)
        skills = [s for s in history if s.active]
        if len(skills) < 2:
            return []
        reflexions = {r.id: r for r in self.reflexions_for(fingerprint)}
        lineage = {s.id: _absorbed_into(s.id, history) for s in skills}
        merges: list[MergeResult] = []
        absorbed_ids: set[str] = set()

        for i, survivor in enumerate(skills):
            if survivor.id in absorbed_ids:
                continue
            for other in skills[i + 1 :]:
                if other.id in absorbed_ids:
                    continue
                score = self.template_similarity(survivor.template, other.template)
                if score < self.config.merge_threshold:
                    continue
                previous_version = survivor.version
                provenance = sorted(
                    dict.fromkeys(survivor.provenance + other.provenance),
                    key=lambda rid: reflexions[rid].seq,
                )
                survivor = replace(
                    survivor,
                    provenance=provenance,
                    version=survivor.version + 1,
                    timestamp=max(survivor.timestamp, other.timestamp),
                )
                lineage[survivor.id] |= {other.id} | lineage[other.id]
                survivor.recompute(reflexions, lineage[survivor.id])
                retired = replace(
                    other,
                    version=other.version + 1,
                    status=SkillStatus.MERGED,
                    merged_into=survivor.id,
                )
                self.backend.write_skill(survivor.to_schema(), expected_version=previous_version)
                self.backend.write_skill(retired.to_schema(), expected_version=other.version)
                absorbed_ids.add(other.id)
                merges.append(MergeResult(fingerprint, survivor, retired))
                logger.info(
                    f"Merged skill {other.id} into {survivor.id} "
                    f"(similarity={score:.2f}, provenance={len(provenance)})"
                )
        return merges

    # --- Introspection ---

    def stats(self) -> dict[str, int]:
        return {
            "episodic": len(self.backend.records(MemoryLayer.EPISODIC)),
            "reflexion": len(self.backend.records(MemoryLayer.REFLEXION)),
            "skills": len(self.all_skills()),
        }
