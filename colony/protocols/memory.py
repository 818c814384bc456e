"""Protocols for memory storage backends and similarity plug-ins."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from colony.memory.records import MemoryLayer, RecordSchema


@runtime_checkable
class MemoryBackend(Protocol):
    """Structural interface for persistence engines behind the memory store."""

    def append(self, record: RecordSchema) -> tuple[int, bool]: ...
    def get(self, record_id: str) -> RecordSchema | None: ...
    def records(
        self, layer: MemoryLayer, fingerprint: str | None = None
    ) -> list[RecordSchema]: ...
    def write_skill(self, record: RecordSchema, expected_version: int) -> None: ...
    def skill_heads(self, fingerprint: str | None = None) -> list[RecordSchema]: ...
    def skill_history(self, skill_id: str) -> list[RecordSchema]: ...
    def close(self) -> None: ...


@runtime_checkable
class Embedder(Protocol):
    """Turns text into a fixed-dimension vector."""

    dim: int

    def embed(self, text: str) -> tuple[float, ...]: ...


@runtime_checkable
class SimilarityIndex(Protocol):
    """Scores candidate vectors against a query vector."""

    def similarities(
        self, query: Sequence[float], candidates: Sequence[Sequence[float]]
    ) -> list[float]: ...


class TemplateSimilarity(Protocol):
    """Judges how equivalent two procedure templates are, in [0, 1]."""

    def __call__(self, a: str, b: str) -> float: ...
