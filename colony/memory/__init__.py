"""Colony memory: episodic, reflexion and skill layers."""

from colony.memory.backends import InMemoryBackend, SQLiteBackend
from colony.memory.consolidation import ConsolidationScheduler
from colony.memory.promotion import PromotionDecision, PromotionPolicy
from colony.memory.records import (
    EpisodicRecord,
    MemoryLayer,
    Outcome,
    Precondition,
    RecordSchema,
    ReflexionRecord,
    Skill,
    SkillStatus,
)
from colony.memory.similarity import CosineIndex, HashingEmbedder, sequence_similarity
from colony.memory.store import MemoryStore, MergeResult, PromotionResult, ScoredRecord

__all__ = [
    "ConsolidationScheduler",
    "CosineIndex",
    "EpisodicRecord",
    "HashingEmbedder",
    "InMemoryBackend",
    "MemoryLayer",
    "MemoryStore",
    "MergeResult",
    "Outcome",
    "Precondition",
    "PromotionDecision",
    "PromotionPolicy",
    "PromotionResult",
    "RecordSchema",
    "ReflexionRecord",
    "SQLiteBackend",
    "ScoredRecord",
    "Skill",
    "SkillStatus",
    "sequence_similarity",
]
