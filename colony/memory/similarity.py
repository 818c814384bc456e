"""Default embedding and similarity plug-ins for the memory store."""

from __future__ import annotations

import difflib
import hashlib
from collections.abc import Sequence

import numpy as np

from colony.tasks import normalize_description


class HashingEmbedder:
    """
    Deterministic signed feature-hashing embedder.

    Unigrams and bigrams of the normalized text are hashed into ``dim``
    buckets with a hash-derived sign, then L2-normalized. No model weights,
    so identical text always yields identical vectors across processes.
    """

    def __init__(self, dim: int = 256):
        if dim < 8:
            raise ValueError("Embedding dimension must be at least 8")
        self.dim = dim

    def _features(self, text: str) -> list[str]:
        words = normalize_description(text).split()
        return words + [f"{a} {b}" for a, b in zip(words, words[1:])]

    def embed(self, text: str) -> tuple[float, ...]:
        vec = np.zeros(self.dim, dtype=np.float64)
        for feature in self._features(text):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            h = int.from_bytes(digest, "big")
            sign = 1.0 if h >> 63 else -1.0
            vec[h % self.dim] += sign
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return tuple(float(x) for x in vec)


class CosineIndex:
    """Exact cosine similarity over all candidates."""

    def similarities(
        self, query: Sequence[float], candidates: Sequence[Sequence[float]]
    ) -> list[float]:
        if not candidates:
            return []
        q = np.asarray(query, dtype=np.float64)
        matrix = np.asarray(candidates, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] != q.shape[0]:
            raise ValueError(
                f"Embedding dimension mismatch: query {q.shape[0]}, candidates {matrix.shape}"
            )
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        dots = matrix @ q
        sims = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        return [float(s) for s in sims]


def sequence_similarity(a: str, b: str) -> float:
    """Template equivalence via difflib's matching-blocks ratio."""
    if a == b:
        return 1.0
    return difflib.SequenceMatcher(None, a, b).ratio()
