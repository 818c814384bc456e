"""Deterministic skill promotion policy."""

from __future__ import annotations

from dataclasses import dataclass, field

from colony.memory.records import ReflexionRecord, Skill
from colony.memory.similarity import sequence_similarity
from colony.protocols.memory import TemplateSimilarity


@dataclass
class PromotionDecision:
    """What a promotion pass should write. Empty means no-op."""

    updates: dict[str, list[ReflexionRecord]] = field(default_factory=dict)
    creations: list[list[ReflexionRecord]] = field(default_factory=list)

    @property
    def noop(self) -> bool:
        return not self.updates and not self.creations


class PromotionPolicy:
    """
    Decides how pending reflexions of one fingerprint class affect skills.

    ``evaluate`` is a pure function of its inputs: given the same skills and
    the same ordered reflexions it returns the same decision, which keeps
    replay-based tests reproducible.

    - Pending reflexions are those after the class watermark (the highest
      sequence number any skill of the class has consumed) that no skill
      already lists in its provenance.
    - A pending reflexion whose procedure matches an active skill's template
      is appended to that skill.
    - The rest are clustered by procedure. A cluster with at least
      ``threshold`` successes, and no more failures than successes, becomes
      a new skill.
    """

    def __init__(
        self,
        threshold: int = 5,
        variant_threshold: float = 0.9,
        similarity: TemplateSimilarity = sequence_similarity,
    ):
        if threshold < 1:
            raise ValueError("Promotion threshold must be at least 1")
        self.threshold = threshold
        self.variant_threshold = variant_threshold
        self.similarity = similarity

    @staticmethod
    def pending(
        skills: list[Skill], reflexions: list[ReflexionRecord]
    ) -> list[ReflexionRecord]:
        claimed = {rid for skill in skills for rid in skill.provenance}
        by_id = {r.id: r for r in reflexions}
        watermark = max((by_id[rid].seq for rid in claimed if rid in by_id), default=0)
        return [r for r in reflexions if r.seq > watermark and r.id not in claimed]

    def _best_skill(self, record: ReflexionRecord, skills: list[Skill]) -> Skill | None:
        best: Skill | None = None
        best_score = -1.0
        for skill in skills:
            score = self.similarity(record.procedure, skill.template)
            # Strictly greater keeps the oldest skill on ties
            if score > best_score:
                best, best_score = skill, score
        if best is not None and best_score >= self.variant_threshold:
            return best
        return None

    def _clusters(self, records: list[ReflexionRecord]) -> list[list[ReflexionRecord]]:
        clusters: list[list[ReflexionRecord]] = []
        for record in records:
            for cluster in clusters:
                score = self.similarity(record.procedure, cluster[0].procedure)
                if score >= self.variant_threshold:
                    cluster.append(record)
                    break
            else:
                clusters.append([record])
        return clusters

    def evaluate(
        self, skills: list[Skill], reflexions: list[ReflexionRecord]
    ) -> PromotionDecision:
        """Decide updates and creations for one class.

        Args:
            skills: Skill heads of the class, any status.
            reflexions: All reflexions of the class, ordered by sequence.
        """
        decision = PromotionDecision()
        active = sorted((s for s in skills if s.active), key=lambda s: (s.created_seq, s.id))
        unassigned: list[ReflexionRecord] = []

        for record in self.pending(skills, reflexions):
            target = self._best_skill(record, active)
            if target is None:
                unassigned.append(record)
            else:
                decision.updates.setdefault(target.id, []).append(record)

        for cluster in self._clusters(unassigned):
            successes = sum(1 for r in cluster if r.succeeded)
            failures = len(cluster) - successes
            if successes >= self.threshold and failures <= successes:
                decision.creations.append(cluster)

        return decision
