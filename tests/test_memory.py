"""Tests for the memory store: layers, retrieval, promotion and consolidation."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

from colony.config import LearningConfig, MemoryConfig
from colony.errors import ColonyError, MemoryWriteConflict, RecordConflict
from colony.memory import (
    ConsolidationScheduler,
    CosineIndex,
    EpisodicRecord,
    HashingEmbedder,
    InMemoryBackend,
    MemoryLayer,
    MemoryStore,
    Outcome,
    Precondition,
    PromotionPolicy,
    ReflexionRecord,
    SkillStatus,
    SQLiteBackend,
    sequence_similarity,
)
from colony.tasks import fingerprint

BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)
DESCRIPTION = "implement the parser"
FP = fingerprint(DESCRIPTION, "coder")

# ── Helpers ──────────────────────────────────────────────────────────


def _reflexion(
    store: MemoryStore,
    n: int,
    outcome: Outcome = Outcome.SUCCESS,
    procedure: str = "model:default",
    skill_id: str | None = None,
    fp: str = FP,
) -> ReflexionRecord:
    return ReflexionRecord(
        id=f"r-{fp[:6]}-{n:03d}",
        fingerprint=fp,
        outcome=outcome,
        critique=f"attempt {n} {outcome.value}",
        embedding=store.embed(DESCRIPTION),
        episodic_id=f"e-{n:03d}",
        timestamp=BASE + timedelta(minutes=n),
        task_id=f"t-{n:03d}",
        specialization="coder",
        description=DESCRIPTION,
        procedure=procedure,
        skill_id=skill_id,
    )


def _episode(
    store: MemoryStore,
    record_id: str,
    text: str,
    timestamp: datetime = BASE,
    payload: bytes = b"{}",
) -> EpisodicRecord:
    return EpisodicRecord(
        id=record_id,
        session_id="s1",
        task_id=f"task-{record_id}",
        timestamp=timestamp,
        embedding=store.embed(text),
        payload=payload,
    )


def _append_many(store: MemoryStore, start: int, count: int, **kwargs) -> list[ReflexionRecord]:
    return [store.append(_reflexion(store, n, **kwargs)) for n in range(start, start + count)]


# ════════════════════════════════════════════════════════════════════
# TestSimilarityPlugins
# ════════════════════════════════════════════════════════════════════


class TestSimilarityPlugins:
    def test_embedder_is_deterministic_and_normalized(self):
        embedder = HashingEmbedder(128)
        a = embedder.embed("Fix the login bug")
        assert a == HashingEmbedder(128).embed("fix the LOGIN bug!")
        assert len(a) == 128
        assert np.linalg.norm(a) == pytest.approx(1.0)

    def test_empty_text_embeds_to_zero(self):
        assert not any(HashingEmbedder(16).embed("   "))

    def test_dimension_floor(self):
        with pytest.raises(ValueError):
            HashingEmbedder(4)

    def test_cosine_index(self):
        embedder = HashingEmbedder(64)
        query = embedder.embed("write release notes")
        sims = CosineIndex().similarities(
            query, [query, embedder.embed("tune the database"), [0.0] * 64]
        )
        assert sims[0] == pytest.approx(1.0)
        assert sims[1] < 0.5
        assert sims[2] == 0.0
        assert CosineIndex().similarities(query, []) == []

    def test_cosine_dimension_mismatch(self):
        with pytest.raises(ValueError, match="mismatch"):
            CosineIndex().similarities([1.0, 0.0], [[1.0, 0.0, 0.0]])

    def test_sequence_similarity(self):
        assert sequence_similarity("model:default", "model:default") == 1.0
        assert sequence_similarity("model:default", "tool:search") < 0.6

    def test_precondition(self):
        pre = Precondition.from_description("coder", "Implement the JSON parser for configs")
        assert pre.keywords == ("implement", "configs", "parser")
        assert pre.accepts("coder", "please implement a parser for yaml configs")
        assert not pre.accepts("writer", "implement the parser for configs")
        assert not pre.accepts("coder", "implement the lexer")


# ════════════════════════════════════════════════════════════════════
# TestAppendAndGet
# ════════════════════════════════════════════════════════════════════


class TestAppendAndGet:
    def test_episodic_payload_round_trip(self, any_memory: MemoryStore):
        payload = bytes(range(256)) + b'{"trace": "\xff"}'
        stored = any_memory.append(_episode(any_memory, "ep-1", "fix bug", payload=payload))
        fetched = any_memory.get("ep-1")
        assert isinstance(fetched, EpisodicRecord)
        assert fetched.payload == payload
        assert fetched.seq == stored.seq
        assert fetched.session_id == "s1"
        assert fetched.timestamp == BASE

    def test_sequence_numbers_are_monotonic(self, any_memory: MemoryStore):
        seqs = [any_memory.append(_episode(any_memory, f"ep-{i}", "x")).seq for i in range(5)]
        assert seqs == sorted(seqs)
        assert len(set(seqs)) == 5
        assert [e.id for e in any_memory.episodes()] == [f"ep-{i}" for i in range(5)]

    def test_identical_reappend_is_noop(self, any_memory: MemoryStore):
        first = any_memory.append(_episode(any_memory, "ep-1", "fix bug"))
        again = any_memory.append(_episode(any_memory, "ep-1", "fix bug"))
        assert again.seq == first.seq
        assert any_memory.stats()["episodic"] == 1

    def test_conflicting_reappend_rejected(self, any_memory: MemoryStore):
        any_memory.append(_episode(any_memory, "ep-1", "fix bug"))
        with pytest.raises(RecordConflict):
            any_memory.append(_episode(any_memory, "ep-1", "fix bug", payload=b"different"))

    def test_reflexion_round_trip(self, any_memory: MemoryStore):
        record = any_memory.append(_reflexion(any_memory, 1, Outcome.FAILURE, skill_id="s-1"))
        fetched = any_memory.get(record.id)
        assert fetched == record
        assert any_memory.reflexions_for(FP) == [record]

    def test_skills_cannot_be_appended(self, memory: MemoryStore):
        _append_many(memory, 1, 5)
        skill = memory.promote(FP).created[0]
        with pytest.raises(TypeError):
            memory.append(skill)

    def test_missing_record(self, any_memory: MemoryStore):
        assert any_memory.get("nope") is None


# ════════════════════════════════════════════════════════════════════
# TestQuery
# ════════════════════════════════════════════════════════════════════


class TestQuery:
    def test_similarity_ranks_first(self, memory: MemoryStore):
        memory.append(_episode(memory, "login", "fix the login bug"))
        memory.append(_episode(memory, "notes", "write release notes"))
        hits = memory.query(memory.embed("fix the login bug"), MemoryLayer.EPISODIC, k=1, now=BASE)
        assert [h.record.id for h in hits] == ["login"]
        assert hits[0].similarity == pytest.approx(1.0)

    def test_recency_breaks_equal_similarity(self, memory: MemoryStore):
        now = BASE + timedelta(days=30)
        memory.append(_episode(memory, "old", "fix the login bug", timestamp=BASE))
        memory.append(_episode(memory, "new", "fix the login bug", timestamp=now))
        hits = memory.query(memory.embed("fix the login bug"), MemoryLayer.EPISODIC, k=2, now=now)
        assert [h.record.id for h in hits] == ["new", "old"]
        # 30 days is over four half-lives of a week
        assert hits[1].score < 0.1

    def test_exact_ties_break_by_id(self, memory: MemoryStore):
        for record_id in ("b", "a", "c"):
            memory.append(_episode(memory, record_id, "same text"))
        hits = memory.query(memory.embed("same text"), MemoryLayer.EPISODIC, k=3, now=BASE)
        assert [h.record.id for h in hits] == ["a", "b", "c"]

    def test_skill_score_includes_success_rate(self, memory: MemoryStore):
        _append_many(memory, 1, 5)
        memory.append(_reflexion(memory, 6, Outcome.FAILURE))
        memory.promote(FP)
        skill = memory.skills_for(FP)[0]
        assert skill.success_rate == pytest.approx(5 / 6)

        hits = memory.query(
            memory.embed(f"coder {DESCRIPTION}"), MemoryLayer.SKILL, k=5, now=skill.timestamp
        )
        assert hits[0].record.id == skill.id
        assert hits[0].score == pytest.approx(5 / 6)

    def test_k_bounds(self, memory: MemoryStore):
        memory.append(_episode(memory, "only", "text"))
        assert memory.query(memory.embed("text"), MemoryLayer.EPISODIC, k=0) == []
        assert len(memory.query(memory.embed("text"), MemoryLayer.EPISODIC, k=10)) == 1
        assert memory.query(memory.embed("text"), MemoryLayer.SKILL, k=3) == []


# ════════════════════════════════════════════════════════════════════
# TestPromotion
# ════════════════════════════════════════════════════════════════════


class TestPromotion:
    def test_below_threshold_is_noop(self, memory: MemoryStore):
        _append_many(memory, 1, 4)
        assert memory.promote(FP).noop
        assert memory.skills_for(FP) == []

    def test_five_successes_create_one_skill(self, memory: MemoryStore):
        records = _append_many(memory, 1, 5)
        result = memory.promote(FP)
        assert len(result.created) == 1
        skill = result.created[0]
        assert skill.id == f"skill-{FP[:12]}-1"
        assert skill.name == "coder:implement-the-parser"
        assert skill.template == "model:default"
        assert skill.provenance == [r.id for r in records]
        assert skill.success_rate == 1.0
        assert skill.version == 1
        assert skill.precondition.specialization == "coder"

    def test_sixth_success_updates_without_duplicate(self, memory: MemoryStore):
        _append_many(memory, 1, 5)
        skill_id = memory.promote(FP).created[0].id

        sixth = memory.append(_reflexion(memory, 6, skill_id=skill_id))
        result = memory.promote(FP)
        assert result.created == []
        assert [s.id for s in result.updated] == [skill_id]

        skills = memory.skills_for(FP)
        assert len(skills) == 1
        assert skills[0].provenance[-1] == sixth.id
        assert len(skills[0].provenance) == 6
        assert skills[0].version == 2
        assert skills[0].usage_count == 1

        memory.append(_reflexion(memory, 7, Outcome.FAILURE, skill_id=skill_id))
        memory.promote(FP)
        assert memory.skills_for(FP)[0].success_rate == pytest.approx(6 / 7)

    def test_usage_credits_only_the_guiding_skill(self, memory: MemoryStore):
        _append_many(memory, 1, 5)
        guide = memory.promote(FP).created[0]

        other_fp = fingerprint("implement the json parser", "coder")
        _append_many(memory, 1, 5, skill_id=guide.id, fp=other_fp)
        (learned,) = memory.promote(other_fp).created
        assert learned.usage_count == 0

        (unchanged,) = memory.skills_for(FP)
        assert unchanged.usage_count == 0
        assert unchanged.version == 1

    def test_failure_majority_blocks_promotion(self, memory: MemoryStore):
        _append_many(memory, 1, 5)
        _append_many(memory, 6, 6, outcome=Outcome.FAILURE)
        assert memory.promote(FP).noop

        memory.append(_reflexion(memory, 12))
        skill = memory.promote(FP).created[0]
        assert skill.success_rate == pytest.approx(0.5)
        assert len(skill.provenance) == 12

    def test_distinct_procedures_become_separate_skills(self, memory: MemoryStore):
        _append_many(memory, 1, 5, procedure="model:default")
        _append_many(memory, 6, 5, procedure="tool:search -> model:default")
        created = memory.promote(FP).created
        assert [s.template for s in created] == ["model:default", "tool:search -> model:default"]
        assert [s.id for s in created] == [f"skill-{FP[:12]}-1", f"skill-{FP[:12]}-2"]

    def test_promotion_is_idempotent(self, memory: MemoryStore):
        _append_many(memory, 1, 6)
        memory.promote(FP)
        before = [s.to_dict() for s in memory.skills_for(FP)]
        assert memory.promote(FP).noop
        assert [s.to_dict() for s in memory.skills_for(FP)] == before

    def test_replay_reproduces_skill_state(self):
        def build() -> list[dict]:
            store = MemoryStore(backend=InMemoryBackend())
            records = [_reflexion(store, n) for n in range(1, 8)]
            records[5] = _reflexion(store, 6, Outcome.FAILURE)
            for record in records + records:
                store.append(record)
                store.promote(FP)
            return [s.to_dict() for s in store.skills_for(FP)]

        assert build() == build()
        assert build()[0]["success_rate"] == pytest.approx(6 / 7)

    def test_policy_is_pure(self, memory: MemoryStore):
        records = _append_many(memory, 1, 5)
        policy = PromotionPolicy(threshold=5)
        first = policy.evaluate([], records)
        second = policy.evaluate([], records)
        assert [[r.id for r in c] for c in first.creations] == [
            [r.id for r in c] for c in second.creations
        ]
        with pytest.raises(ValueError):
            PromotionPolicy(threshold=0)

    def test_classes_are_independent(self, memory: MemoryStore):
        other = fingerprint("write the docs", "writer")
        _append_many(memory, 1, 5)
        _append_many(memory, 1, 3, fp=other)
        memory.promote(FP)
        memory.promote(other)
        assert len(memory.skills_for(FP)) == 1
        assert memory.skills_for(other) == []
        assert memory.best_skill(other) is None


# ════════════════════════════════════════════════════════════════════
# TestWriteConflicts
# ════════════════════════════════════════════════════════════════════


class TestWriteConflicts:
    def test_stale_version_rejected(self, any_memory: MemoryStore):
        _append_many(any_memory, 1, 5)
        skill = any_memory.promote(FP).created[0]
        with pytest.raises(MemoryWriteConflict):
            any_memory.backend.write_skill(skill.to_schema(), expected_version=0)
        with pytest.raises(MemoryWriteConflict):
            any_memory.backend.write_skill(skill.to_schema(), expected_version=7)

    def test_store_retries_conflicts(self, memory: MemoryStore, monkeypatch: pytest.MonkeyPatch):
        real_write = memory.backend.write_skill
        attempts = []

        def flaky_write(record, expected_version):
            attempts.append(record.id)
            if len(attempts) == 1:
                raise MemoryWriteConflict(FP, record.id, expected_version)
            return real_write(record, expected_version)

        monkeypatch.setattr(memory.backend, "write_skill", flaky_write)
        _append_many(memory, 1, 5)
        result = memory.promote(FP)
        assert len(result.created) == 1
        assert len(attempts) == 2

    def test_concurrent_writers_single_skill(self, memory: MemoryStore):
        errors: list[BaseException] = []

        def writer(offset: int) -> None:
            try:
                for n in range(offset, offset + 4):
                    memory.append(_reflexion(memory, n))
                    memory.promote(FP)
            except BaseException as exc:
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(i * 10,)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        skills = memory.skills_for(FP)
        assert len(skills) == 1
        assert len(skills[0].provenance) == 20
        assert len(set(skills[0].provenance)) == 20


# ════════════════════════════════════════════════════════════════════
# TestConsolidation
# ════════════════════════════════════════════════════════════════════


def _family_similarity(a: str, b: str) -> float:
    """Templates sharing a first step are near-duplicates, others unrelated."""
    if a == b:
        return 1.0
    return 0.8 if a.split(" -> ")[0] == b.split(" -> ")[0] else 0.0


class TestConsolidation:
    def _store(self) -> MemoryStore:
        store = MemoryStore(
            backend=InMemoryBackend(),
            config=MemoryConfig(merge_threshold=0.75),
            learning=LearningConfig(variant_threshold=0.9),
            template_similarity=_family_similarity,
        )
        _append_many(store, 1, 5, procedure="tool:search -> model:default")
        store.promote(FP)
        _append_many(store, 6, 5, procedure="tool:search -> model:large")
        store.promote(FP)
        return store

    def test_near_duplicates_merge_into_oldest(self):
        store = self._store()
        first, second = store.skills_for(FP)

        merges = store.consolidate(FP)
        assert len(merges) == 1
        survivor, absorbed = merges[0].survivor, merges[0].absorbed
        assert survivor.id == first.id
        assert absorbed.id == second.id
        assert survivor.provenance == first.provenance + second.provenance
        assert survivor.version == 2
        assert survivor.success_rate == 1.0
        assert absorbed.status == SkillStatus.MERGED
        assert absorbed.merged_into == first.id

        assert [s.id for s in store.skills_for(FP)] == [first.id]
        assert len(store.skills_for(FP, include_merged=True)) == 2
        history = store.skill_history(second.id)
        assert [s.version for s in history] == [1, 2]
        assert history[0].status == SkillStatus.ACTIVE

    def test_survivor_inherits_absorbed_usage(self):
        store = self._store()
        first, second = store.skills_for(FP)
        store.append(
            _reflexion(store, 11, procedure="tool:search -> model:large", skill_id=second.id)
        )
        store.promote(FP)
        assert store.skills_for(FP)[1].usage_count == 1

        (merge,) = store.consolidate(FP)
        assert merge.survivor.usage_count == 1

        # A task routed with the absorbed skill's hint still counts for the survivor
        store.append(
            _reflexion(store, 12, procedure="tool:search -> model:default", skill_id=second.id)
        )
        (updated,) = store.promote(FP).updated
        assert updated.id == first.id
        assert updated.usage_count == 2

    def test_consolidation_is_idempotent(self):
        store = self._store()
        store.consolidate()
        assert store.consolidate() == []

    def test_unrelated_templates_not_merged(self, memory: MemoryStore):
        _append_many(memory, 1, 5, procedure="model:default")
        _append_many(memory, 6, 5, procedure="tool:search -> model:default")
        memory.promote(FP)
        assert memory.consolidate(FP) == []
        assert len(memory.skills_for(FP)) == 2

    def test_scheduler_runs_periodically(self, memory: MemoryStore):
        scheduler = ConsolidationScheduler(memory)
        scheduler.start(interval_hours=0.1 / 3600)
        try:
            deadline = time.monotonic() + 5
            while scheduler.runs < 2 and time.monotonic() < deadline:
                time.sleep(0.02)
            assert scheduler.runs >= 2
        finally:
            scheduler.stop()
        assert not scheduler.running

    def test_scheduler_survives_failures(
        self, memory: MemoryStore, monkeypatch: pytest.MonkeyPatch
    ):
        calls = []

        def broken(fingerprint=None):
            calls.append(fingerprint)
            raise ColonyError("disk on fire")

        monkeypatch.setattr(memory, "consolidate", broken)
        scheduler = ConsolidationScheduler(memory)
        scheduler.start(interval_hours=0.1 / 3600)
        try:
            deadline = time.monotonic() + 5
            while len(calls) < 2 and time.monotonic() < deadline:
                time.sleep(0.02)
            assert len(calls) >= 2
            assert scheduler.runs == 0
        finally:
            scheduler.stop()


# ════════════════════════════════════════════════════════════════════
# TestPersistence
# ════════════════════════════════════════════════════════════════════


class TestPersistence:
    def test_sqlite_survives_reopen(self, tmp_data_dir: Path):
        db_path = tmp_data_dir / "memory.db"
        with MemoryStore(backend=SQLiteBackend(db_path)) as store:
            _append_many(store, 1, 6)
            skill = store.promote(FP).created[0]
            store.append(_episode(store, "ep-1", "fix bug", payload=b"\x00raw\xff"))

        with MemoryStore(backend=SQLiteBackend(db_path)) as store:
            reopened = store.skills_for(FP)
            assert [s.id for s in reopened] == [skill.id]
            assert reopened[0].provenance == skill.provenance
            assert store.get(skill.id).template == "model:default"
            assert store.get("ep-1").payload == b"\x00raw\xff"
            assert [r.seq for r in store.reflexions_for(FP)] == [1, 2, 3, 4, 5, 6]
            assert store.stats() == {"episodic": 1, "reflexion": 6, "skills": 1}

    def test_open_selects_backend(self, tmp_data_dir: Path):
        with MemoryStore.open(tmp_data_dir, MemoryConfig(backend="sqlite")) as store:
            assert isinstance(store.backend, SQLiteBackend)
        assert (tmp_data_dir / "colony-memory.db").exists()
        with MemoryStore.open(tmp_data_dir, MemoryConfig(backend="memory")) as store:
            assert isinstance(store.backend, InMemoryBackend)
