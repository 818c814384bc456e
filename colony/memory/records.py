"""
Memory records for the three layers: episodic, reflexion and skill.

Episodic and reflexion records are frozen; a correction is a new record.
Skills change only through promotion and consolidation, which write a new
version of the skill head.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from colony.tasks import normalize_description

_STOPWORDS = frozenset(
    "a an and the of to in on for with from by into then is are be this that it as at or".split()
)


class MemoryLayer(Enum):
    """Logical layers of the memory store."""

    EPISODIC = "episodic"
    REFLEXION = "reflexion"
    SKILL = "skill"


class Outcome(Enum):
    """Outcome of a completed task as seen by the learning engine."""

    SUCCESS = "success"
    FAILURE = "failure"


class SkillStatus(Enum):
    """Lifecycle of a skill head."""

    ACTIVE = "active"
    MERGED = "merged"


class RecordSchema(BaseModel):
    """Logical persistence schema shared by every layer and backend."""

    id: str = Field(..., min_length=1)
    layer: MemoryLayer
    fingerprint: str | None = None
    embedding: list[float] = Field(default_factory=list)
    payload: bytes = b""
    timestamp: datetime
    provenance_refs: list[str] = Field(default_factory=list)
    seq: int = 0
    version: int = 0

    def same_content(self, other: RecordSchema) -> bool:
        """Equality ignoring store-assigned fields."""
        return self.model_dump(exclude={"seq", "version"}) == other.model_dump(
            exclude={"seq", "version"}
        )


def _json_payload(data: dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class EpisodicRecord:
    """Raw trace of one task execution."""

    id: str
    session_id: str
    task_id: str
    timestamp: datetime
    embedding: tuple[float, ...]
    payload: bytes
    fingerprint: str | None = None
    seq: int = 0

    layer = MemoryLayer.EPISODIC

    def to_schema(self) -> RecordSchema:
        return RecordSchema(
            id=self.id,
            layer=MemoryLayer.EPISODIC,
            fingerprint=self.fingerprint,
            embedding=list(self.embedding),
            payload=self.payload,
            timestamp=self.timestamp,
            provenance_refs=[self.session_id, self.task_id],
            seq=self.seq,
        )

    @classmethod
    def from_schema(cls, schema: RecordSchema) -> EpisodicRecord:
        session_id, task_id = (schema.provenance_refs + ["", ""])[:2]
        return cls(
            id=schema.id,
            session_id=session_id,
            task_id=task_id,
            timestamp=schema.timestamp,
            embedding=tuple(schema.embedding),
            payload=schema.payload,
            fingerprint=schema.fingerprint,
            seq=schema.seq,
        )

    def trace(self) -> dict[str, Any]:
        """Decode the payload, which the learning engine writes as JSON."""
        return json.loads(self.payload.decode("utf-8"))


@dataclass(frozen=True)
class ReflexionRecord:
    """Post-hoc critique of one task outcome."""

    id: str
    fingerprint: str
    outcome: Outcome
    critique: str
    embedding: tuple[float, ...]
    episodic_id: str
    timestamp: datetime
    task_id: str = ""
    specialization: str = ""
    description: str = ""
    procedure: str = ""
    skill_id: str | None = None
    seq: int = 0

    layer = MemoryLayer.REFLEXION

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    def to_schema(self) -> RecordSchema:
        return RecordSchema(
            id=self.id,
            layer=MemoryLayer.REFLEXION,
            fingerprint=self.fingerprint,
            embedding=list(self.embedding),
            payload=_json_payload(
                {
                    "outcome": self.outcome.value,
                    "critique": self.critique,
                    "task_id": self.task_id,
                    "specialization": self.specialization,
                    "description": self.description,
                    "procedure": self.procedure,
                    "skill_id": self.skill_id,
                }
            ),
            timestamp=self.timestamp,
            provenance_refs=[self.episodic_id],
            seq=self.seq,
        )

    @classmethod
    def from_schema(cls, schema: RecordSchema) -> ReflexionRecord:
        data = json.loads(schema.payload.decode("utf-8"))
        return cls(
            id=schema.id,
            fingerprint=schema.fingerprint or "",
            outcome=Outcome(data["outcome"]),
            critique=data["critique"],
            embedding=tuple(schema.embedding),
            episodic_id=schema.provenance_refs[0] if schema.provenance_refs else "",
            timestamp=schema.timestamp,
            task_id=data.get("task_id", ""),
            specialization=data.get("specialization", ""),
            description=data.get("description", ""),
            procedure=data.get("procedure", ""),
            skill_id=data.get("skill_id"),
            seq=schema.seq,
        )


@dataclass(frozen=True)
class Precondition:
    """Predicate deciding whether a skill applies to a task."""

    specialization: str
    keywords: tuple[str, ...] = ()

    def accepts(self, specialization: str, description: str) -> bool:
        if specialization != self.specialization:
            return False
        words = set(normalize_description(description).split())
        return all(k in words for k in self.keywords)

    @classmethod
    def from_description(
        cls, specialization: str, description: str, max_keywords: int = 3
    ) -> Precondition:
        words = [w for w in normalize_description(description).split() if w not in _STOPWORDS]
        # Longest words are the most specific; ties keep first occurrence
        ranked = sorted(dict.fromkeys(words), key=lambda w: (-len(w), words.index(w)))
        return cls(specialization=specialization, keywords=tuple(ranked[:max_keywords]))


def skill_name(specialization: str, description: str) -> str:
    slug = re.sub(r"\s+", "-", normalize_description(description))[:48].strip("-")
    return f"{specialization}:{slug}"


@dataclass
class Skill:
    """A reusable procedure promoted from consistent successful reflexions."""

    id: str
    name: str
    fingerprint: str
    precondition: Precondition
    template: str
    embedding: tuple[float, ...]
    timestamp: datetime
    provenance: list[str] = field(default_factory=list)
    success_rate: float = 0.0
    usage_count: int = 0
    version: int = 0
    created_seq: int = 0
    status: SkillStatus = SkillStatus.ACTIVE
    merged_into: str | None = None

    layer = MemoryLayer.SKILL

    @property
    def active(self) -> bool:
        return self.status == SkillStatus.ACTIVE

    def recompute(
        self, reflexions: dict[str, ReflexionRecord], lineage: set[str] | None = None
    ) -> None:
        """Recompute success rate and usage count from the full provenance.

        A use is a provenance record guided by this skill or by one in
        ``lineage``, the ids of skills merged into it.
        """
        guides = {self.id} | (lineage or set())
        records = [reflexions[rid] for rid in self.provenance]
        if not records:
            self.success_rate = 0.0
            self.usage_count = 0
            return
        successes = sum(1 for r in records if r.succeeded)
        self.success_rate = successes / len(records)
        self.usage_count = sum(1 for r in records if r.skill_id in guides)

    def with_provenance(
        self,
        extra: list[ReflexionRecord],
        reflexions: dict[str, ReflexionRecord],
        lineage: set[str] | None = None,
    ) -> Skill:
        """Next version of this skill with ``extra`` appended to provenance."""
        updated = replace(
            self,
            provenance=self.provenance + [r.id for r in extra],
            version=self.version + 1,
            timestamp=max([self.timestamp] + [r.timestamp for r in extra]),
        )
        updated.recompute(reflexions, lineage)
        return updated

    def to_schema(self) -> RecordSchema:
        return RecordSchema(
            id=self.id,
            layer=MemoryLayer.SKILL,
            fingerprint=self.fingerprint,
            embedding=list(self.embedding),
            payload=_json_payload(
                {
                    "name": self.name,
                    "precondition": {
                        "specialization": self.precondition.specialization,
                        "keywords": list(self.precondition.keywords),
                    },
                    "template": self.template,
                    "success_rate": self.success_rate,
                    "usage_count": self.usage_count,
                    "created_seq": self.created_seq,
                    "status": self.status.value,
                    "merged_into": self.merged_into,
                }
            ),
            timestamp=self.timestamp,
            provenance_refs=list(self.provenance),
            version=self.version,
        )

    @classmethod
    def from_schema(cls, schema: RecordSchema) -> Skill:
        data = json.loads(schema.payload.decode("utf-8"))
        pre = data["precondition"]
        return cls(
            id=schema.id,
            name=data["name"],
            fingerprint=schema.fingerprint or "",
            precondition=Precondition(pre["specialization"], tuple(pre["keywords"])),
            template=data["template"],
            embedding=tuple(schema.embedding),
            timestamp=schema.timestamp,
            provenance=list(schema.provenance_refs),
            success_rate=data["success_rate"],
            usage_count=data["usage_count"],
            version=schema.version,
            created_seq=data["created_seq"],
            status=SkillStatus(data["status"]),
            merged_into=data.get("merged_into"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "fingerprint": self.fingerprint,
            "template": self.template,
            "success_rate": self.success_rate,
            "usage_count": self.usage_count,
            "provenance": list(self.provenance),
            "version": self.version,
            "status": self.status.value,
            "merged_into": self.merged_into,
        }


AnyRecord = EpisodicRecord | ReflexionRecord | Skill


def record_from_schema(schema: RecordSchema) -> AnyRecord:
    if schema.layer == MemoryLayer.EPISODIC:
        return EpisodicRecord.from_schema(schema)
    if schema.layer == MemoryLayer.REFLEXION:
        return ReflexionRecord.from_schema(schema)
    return Skill.from_schema(schema)
