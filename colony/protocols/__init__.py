"""Protocol interface contracts for Colony components."""

from colony.protocols.gateway import Gateway
from colony.protocols.intelligence import IntelligenceProvider
from colony.protocols.memory import Embedder, MemoryBackend, SimilarityIndex, TemplateSimilarity

__all__ = [
    "Embedder",
    "Gateway",
    "IntelligenceProvider",
    "MemoryBackend",
    "SimilarityIndex",
    "TemplateSimilarity",
]
