"""
Meta agent: cross-cluster synthesis, gap ranking and convergence.

Consumes the iteration's ``meso_output_<iteration>`` entries, flattens
their cluster and thematic gaps into candidates, ranks them with
``GapScorer`` and compares the top of the ranking with the previous
iteration's ``meta_output`` to decide whether the loop has converged.
"""

import logging
import time
from collections import Counter
from typing import Dict, List, Optional

from rmri.agents.base import BaseAgentProcessor
from rmri.agents.meso import meso_output_key
from rmri.agents.scoring import (
    SOURCE_CLUSTER,
    SOURCE_THEMATIC,
    GapCandidate,
    GapScorer,
    check_convergence,
    rank_gaps,
)
from rmri.context.store import ContextStore, WriteMode
from rmri.core.errors import NoInputsError
from rmri.core.workflow import AgentType
from rmri.db.models import ResultType
from rmri.models.jobs import MetaJobPayload
from rmri.models.meso import MesoOutput
from rmri.models.meta import (
    ConvergenceResult,
    CrossDomainPattern,
    MetaOutput,
    MetaStatistics,
    RankedGap,
    ResearchDirection,
    ResearchFrontier,
)

logger = logging.getLogger(__name__)

META_OUTPUT_PREFIX = "meta_output_"

RANKED_GAPS_KEPT = 20
CONVERGENCE_TOP_K = 10
DIRECTIONS_FROM_GAPS = 5
MAX_DIRECTIONS = 10
TEMPORAL_SPREAD_YEARS = 3
MIN_METHOD_FREQUENCY = 3


def meta_output_key(iteration: int) -> str:
    return f"{META_OUTPUT_PREFIX}{iteration}"


def identify_cross_domain_patterns(meso_outputs: List[MesoOutput]) -> List[CrossDomainPattern]:
    patterns = []
    clusters = [c for m in meso_outputs for c in m.clusters]

    theme_counts = Counter(c.theme.label for c in clusters)
    for theme, freq in theme_counts.items():
        if freq >= 2:
            patterns.append(CrossDomainPattern(
                type="recurring_theme",
                theme=theme,
                frequency=freq,
                description=f"Theme appears across {freq} clusters",
                confidence=min(0.9, 0.5 + freq * 0.1),
            ))

    method_counts = Counter(m.method for c in clusters for m in c.common_methodologies)
    frequent = [(m, n) for m, n in method_counts.items() if n >= MIN_METHOD_FREQUENCY]
    for method, freq in frequent[:5]:
        patterns.append(CrossDomainPattern(
            type="cross_domain_methodology",
            methodology=method,
            frequency=freq,
            description="Methodology used across multiple themes",
            confidence=0.8,
        ))

    mins = [c.year_range.min for c in clusters if c.year_range.min is not None]
    maxs = [c.year_range.max for c in clusters if c.year_range.max is not None]
    if mins and maxs and max(maxs) - min(mins) > TEMPORAL_SPREAD_YEARS:
        patterns.append(CrossDomainPattern(
            type="temporal_evolution",
            description=f"Research evolution over {max(maxs) - min(mins)} years",
            year_min=min(mins),
            year_max=max(maxs),
            confidence=0.85,
        ))

    return patterns


def collect_gap_candidates(meso_outputs: List[MesoOutput]) -> List[GapCandidate]:
    """Flatten cluster gap groups and thematic gaps; first occurrence of a description wins."""
    candidates: Dict[str, GapCandidate] = {}

    def add(candidate: GapCandidate):
        candidates.setdefault(candidate.description, candidate)

    for meso in meso_outputs:
        for cluster in meso.clusters:
            for group in cluster.identified_gaps:
                for description in group.gaps:
                    add(GapCandidate(
                        description=description,
                        source=SOURCE_CLUSTER,
                        priority=group.priority,
                        theme=cluster.theme.label,
                        cluster_size=cluster.size,
                        cluster_cohesion=cluster.cohesion,
                        confidence=cluster.confidence or 0.7,
                    ))
        for gap in meso.thematic_gaps:
            add(GapCandidate(
                description=gap.description,
                source=SOURCE_THEMATIC,
                priority=gap.priority,
                theme=gap.theme,
                confidence=gap.confidence,
            ))

    return list(candidates.values())


def identify_research_frontiers(
    meso_outputs: List[MesoOutput],
    patterns: List[CrossDomainPattern],
) -> List[ResearchFrontier]:
    frontiers = []

    trending = [
        {"theme": c.theme.label, "trends": [t.type for t in c.trends], "papers": c.size}
        for m in meso_outputs for c in m.clusters if c.trends
    ]
    if trending:
        frontiers.append(ResearchFrontier(
            type="trending_research",
            description="Rapidly evolving research areas with increasing activity",
            confidence=0.8,
            items=trending[:5],
        ))

    recurring = [p for p in patterns if p.type == "recurring_theme"][:3]
    if recurring:
        frontiers.append(ResearchFrontier(
            type="cross_domain_synthesis",
            description="Opportunities for interdisciplinary research",
            confidence=0.75,
            items=[{"theme": p.theme, "frequency": p.frequency} for p in recurring],
        ))

    methods = [p for p in patterns if p.type == "cross_domain_methodology"][:3]
    if methods:
        frontiers.append(ResearchFrontier(
            type="methodological_innovation",
            description="New methodological approaches gaining traction",
            confidence=0.7,
            items=[{"methodology": p.methodology, "frequency": p.frequency} for p in methods],
        ))

    return frontiers


def generate_research_directions(
    ranked_gaps: List[RankedGap],
    frontiers: List[ResearchFrontier],
) -> List[ResearchDirection]:
    directions = [
        ResearchDirection(
            priority=index + 1,
            direction=gap.description,
            theme=gap.theme,
            rationale=f"High-impact gap with score {gap.total_score:.2f}",
            expected_impact=gap.scores.impact,
            feasibility=gap.scores.feasibility,
            novelty=gap.scores.novelty,
            confidence=gap.confidence,
        )
        for index, gap in enumerate(ranked_gaps[:DIRECTIONS_FROM_GAPS])
    ]

    for frontier in frontiers:
        if frontier.type != "cross_domain_synthesis":
            continue
        themes = " and ".join(str(item["theme"]) for item in frontier.items)
        directions.append(ResearchDirection(
            priority=len(directions) + 1,
            direction=f"Explore intersections between {themes}",
            theme="cross-domain",
            rationale="Cross-domain synthesis opportunity",
            expected_impact=0.8,
            feasibility=0.6,
            novelty=0.85,
            confidence=frontier.confidence,
        ))

    return directions[:MAX_DIRECTIONS]


def meta_confidence(
    meso_outputs: List[MesoOutput],
    ranked_gaps: List[RankedGap],
    convergence: ConvergenceResult,
) -> float:
    confidence = 0.6
    if len(meso_outputs) >= 2:
        confidence += 0.1
    if len(meso_outputs) >= 4:
        confidence += 0.1

    top = ranked_gaps[:10]
    if top:
        confidence += sum(g.total_score for g in top) / len(top) * 0.15
    if convergence.converged:
        confidence += 0.15
    return min(confidence, 0.95)


class MetaAgentProcessor(BaseAgentProcessor):
    """Ranks gaps across clusters and checks convergence."""

    agent_type = AgentType.META

    def __init__(
        self,
        context_store: ContextStore,
        scorer: Optional[GapScorer] = None,
        top_gaps_kept: int = RANKED_GAPS_KEPT,
        convergence_top_k: int = CONVERGENCE_TOP_K
    ):
        super().__init__(context_store)
        self.scorer = scorer or GapScorer()
        self.top_gaps_kept = top_gaps_kept
        self.convergence_top_k = convergence_top_k

    def read_meso_outputs(self, run_id: str, iteration: int) -> List[MesoOutput]:
        return [
            MesoOutput.model_validate(record.data)
            for record in self.context_store.find(run_id, meso_output_key(iteration))
            if record.data
        ]

    def read_previous_gaps(self, run_id: str, iteration: int) -> Optional[List[RankedGap]]:
        """Ranked gaps of the previous iteration, or None when there is none."""
        if iteration <= 1:
            return None
        records = self.context_store.find(run_id, meta_output_key(iteration - 1))
        if not records or not records[0].data:
            logger.warning(f"No meta output found for run {run_id} iteration {iteration - 1}")
            return None
        return MetaOutput.model_validate(records[0].data).ranked_gaps

    async def run(self, payload: MetaJobPayload) -> MetaOutput:
        started = time.monotonic()
        meso_outputs = self.read_meso_outputs(payload.run_id, payload.iteration)
        if not meso_outputs:
            raise NoInputsError(payload.run_id, payload.iteration, "meso outputs")

        patterns = identify_cross_domain_patterns(meso_outputs)
        candidates = collect_gap_candidates(meso_outputs)
        ranked = rank_gaps(candidates, self.scorer, limit=self.top_gaps_kept)
        frontiers = identify_research_frontiers(meso_outputs, patterns)
        directions = generate_research_directions(ranked, frontiers)

        convergence = check_convergence(
            ranked,
            self.read_previous_gaps(payload.run_id, payload.iteration),
            threshold=payload.convergence_threshold,
            top_k=self.convergence_top_k,
        )
        should_continue = not convergence.converged and payload.iteration < payload.max_iterations

        logger.info(
            f"Meta agent {payload.agent_id}: {len(candidates)} candidate gaps, "
            f"convergence {convergence.similarity:.2f} ({convergence.reason})"
        )

        output = MetaOutput(
            iteration=payload.iteration,
            agent_id=payload.agent_id,
            cross_domain_patterns=patterns,
            ranked_gaps=ranked,
            research_frontiers=frontiers,
            recommended_directions=directions,
            convergence=convergence,
            statistics=MetaStatistics(
                total_clusters=sum(m.total_clusters for m in meso_outputs),
                total_papers=sum(m.total_papers for m in meso_outputs),
                total_gaps_identified=len(candidates),
                unique_themes=len({c.theme.label for m in meso_outputs for c in m.clusters}),
                domains_covered=len(meso_outputs),
            ),
            confidence=meta_confidence(meso_outputs, ranked, convergence),
            should_continue=should_continue,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )

        data = output.model_dump(mode="json")
        self.context_store.write(
            payload.run_id,
            payload.agent_id,
            meta_output_key(payload.iteration),
            data,
            mode=WriteMode.OVERWRITE,
            metadata={"iteration": payload.iteration, "converged": convergence.converged},
        )
        self._store_result(payload, ResultType.SYNTHESIS, data, output.confidence)
        return output
