"""
Gap scoring, ranking and convergence.

Each candidate gap is scored on four axes in [0, 1]:

- importance: priority, size and cohesion of the cluster it came from
- novelty: novelty keywords, cross-domain intersection wording
- feasibility: data availability minus complexity keywords
- impact: impact keywords, cross-domain provenance

The total is a weighted sum with weights summing to 1.0, so it stays in
[0, 1] as well.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from rmri.models.meta import ConvergenceResult, GapScores, RankedGap

logger = logging.getLogger(__name__)

SCORE_WEIGHTS = {
    "importance": 0.35,
    "novelty": 0.25,
    "feasibility": 0.20,
    "impact": 0.20,
}

NOVELTY_KEYWORDS = ("unexplored", "novel", "new", "emerging", "frontier", "innovative", "untapped")
INTERSECTION_MARKERS = ("∩", "intersection")
FEASIBILITY_KEYWORDS = ("data available", "existing")
COMPLEXITY_KEYWORDS = ("fundamental", "theoretical", "long-term", "require significant", "major breakthrough")
IMPACT_KEYWORDS = (
    "significant", "important", "critical", "essential",
    "breakthrough", "transformative", "game-changing",
)

SOURCE_CLUSTER = "meso_cluster"
SOURCE_THEMATIC = "thematic_analysis"


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class GapCandidate:
    """A gap flattened out of a meso output, with its provenance."""
    description: str
    source: str
    priority: Optional[str] = None
    theme: Optional[str] = None
    type: str = "inferred"
    cluster_size: Optional[int] = None
    cluster_cohesion: Optional[float] = None
    confidence: float = 0.7
    rationale: Optional[str] = None


class GapScorer:
    """Keyword and provenance based scoring."""

    def importance(self, gap: GapCandidate) -> float:
        score = 0.5
        if gap.priority == "high":
            score += 0.3
        elif gap.priority == "medium":
            score += 0.15
        if gap.cluster_size:
            score += min(0.2, gap.cluster_size * 0.02)
        if gap.cluster_cohesion:
            score += gap.cluster_cohesion * 0.2
        return clamp(score)

    def novelty(self, gap: GapCandidate) -> float:
        text = gap.description.lower()
        score = 0.5 + 0.1 * sum(1 for kw in NOVELTY_KEYWORDS if kw in text)
        if any(marker in text for marker in INTERSECTION_MARKERS):
            score += 0.2
        return clamp(score)

    def feasibility(self, gap: GapCandidate) -> float:
        text = gap.description.lower()
        score = 0.6
        if any(kw in text for kw in FEASIBILITY_KEYWORDS):
            score += 0.2
        score -= 0.1 * sum(1 for kw in COMPLEXITY_KEYWORDS if kw in text)
        return clamp(score, low=0.2)

    def impact(self, gap: GapCandidate) -> float:
        text = gap.description.lower()
        score = 0.5 + 0.1 * sum(1 for kw in IMPACT_KEYWORDS if kw in text)
        if gap.source == SOURCE_THEMATIC:
            score += 0.15
        return clamp(score)

    def score(self, gap: GapCandidate) -> GapScores:
        return GapScores(
            importance=self.importance(gap),
            novelty=self.novelty(gap),
            feasibility=self.feasibility(gap),
            impact=self.impact(gap),
        )

    @staticmethod
    def total(scores: GapScores) -> float:
        total = sum(getattr(scores, axis) * weight for axis, weight in SCORE_WEIGHTS.items())
        return clamp(total)


def rank_gaps(
    candidates: Iterable[GapCandidate],
    scorer: Optional[GapScorer] = None,
    limit: Optional[int] = 20
) -> List[RankedGap]:
    """
    Score, sort and rank candidates.

    The sort is stable and descending by total score; ranks run 1..N.
    """
    scorer = scorer or GapScorer()
    scored = []
    for gap in candidates:
        scores = scorer.score(gap)
        scored.append(RankedGap(
            description=gap.description,
            type=gap.type,
            theme=gap.theme,
            priority=gap.priority,
            scores=scores,
            total_score=scorer.total(scores),
            confidence=gap.confidence,
            source=gap.source,
            rationale=gap.rationale,
        ))

    scored.sort(key=lambda g: g.total_score, reverse=True)
    if limit is not None:
        scored = scored[:limit]
    for index, gap in enumerate(scored):
        gap.rank = index + 1
    return scored


def jaccard_similarity(a: Iterable[str], b: Iterable[str], empty: float = 1.0) -> float:
    """
    |A ∩ B| / |A ∪ B|.

    ``empty`` is returned when both sets are empty: 1.0 suits gap-list
    comparison, where two empty lists are identical; keyword overlap
    passes 0.0 since nothing was shared.
    """
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return empty
    return len(set_a & set_b) / len(union)


def check_convergence(
    current: List[RankedGap],
    previous: Optional[List[RankedGap]],
    threshold: float = 0.7,
    top_k: int = 10
) -> ConvergenceResult:
    """
    Compare this iteration's top-k gap descriptions with the previous one's.

    ``previous=None`` means there is no earlier iteration to compare with.
    """
    if previous is None:
        return ConvergenceResult(converged=False, similarity=0.0, reason="First iteration")
    if not previous:
        return ConvergenceResult(converged=False, similarity=0.0, reason="No previous gaps to compare")

    similarity = jaccard_similarity(
        (g.description for g in current[:top_k]),
        (g.description for g in previous[:top_k]),
    )
    converged = similarity >= threshold
    if converged:
        reason = f"Top gaps stabilized ({similarity * 100:.1f}% similarity)"
    else:
        reason = f"Still evolving ({similarity * 100:.1f}% similarity, threshold {threshold * 100:.0f}%)"

    logger.debug(f"Convergence check: {reason}")
    return ConvergenceResult(converged=converged, similarity=similarity, reason=reason)
