"""Protocol for language model backends."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class IntelligenceProvider(Protocol):
    """Structural interface for language model backends."""

    def generate(self, prompt: str, system: str | None = None) -> str: ...
