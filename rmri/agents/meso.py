"""
Meso agent: thematic clustering of one iteration's micro outputs.

Reads every ``micro_output_<iteration>_*`` entry, groups the papers through
a ``ClusterStrategy`` and summarizes each cluster (theme keywords,
cohesion, grouped contributions and gaps, shared methodologies, trends).
Cross-cluster patterns and thematic gaps are derived from the summaries.
The result is written under ``meso_output_<iteration>`` (overwrite).
"""

import itertools
import logging
import re
import time
from collections import Counter
from typing import Dict, List, Optional

from rmri.agents.base import BaseAgentProcessor
from rmri.agents.clustering import Cluster, ClusterStrategy, HashBucketClusterStrategy
from rmri.agents.micro import MICRO_OUTPUT_PREFIX
from rmri.agents.scoring import jaccard_similarity
from rmri.context.store import ContextStore, WriteMode
from rmri.core.errors import NoInputsError
from rmri.core.workflow import AgentType
from rmri.db.models import ResultType
from rmri.models.jobs import MesoJobPayload
from rmri.models.meso import (
    ClusterPaper,
    ClusterSummary,
    ClusterTheme,
    ContributionGroup,
    CrossClusterPattern,
    GapGroup,
    MesoOutput,
    MesoStatistics,
    MethodologyFrequency,
    ThematicGap,
    TrendSignal,
    YearRange,
)
from rmri.models.micro import MicroOutput

logger = logging.getLogger(__name__)

MESO_OUTPUT_PREFIX = "meso_output_"

CENTROID_SIZE = 10
THEME_KEYWORDS = 5
KEYWORDS_PER_PAPER = 20
MIN_KEYWORD_LENGTH = 5
GAPS_PER_GROUP = 5
MIN_METHOD_OCCURRENCES = 3
MAX_METHODOLOGIES = 5
TEMPORAL_SPREAD_YEARS = 5
RECENT_YEAR = 2020
HIGH_IMPACT_CITATIONS = 10

PRIORITY_ORDER = ("high", "medium", "low")

METHODOLOGY_KEYWORDS = (
    "neural network", "deep learning", "machine learning",
    "transformer", "lstm", "cnn", "rnn",
    "reinforcement learning", "supervised", "unsupervised",
    "clustering", "classification", "regression",
)

STOPWORDS = frozenset({
    "about", "above", "after", "again", "among", "based", "being", "could",
    "these", "those", "their", "there", "which", "while", "where", "would",
    "other", "paper", "study", "using", "through", "under", "within",
})


def meso_output_key(iteration: int) -> str:
    return f"{MESO_OUTPUT_PREFIX}{iteration}"


def _paper_text(item: MicroOutput) -> str:
    return " ".join([item.title] + [c.description for c in item.contributions])


def _words(text: str) -> List[str]:
    return [
        w for w in re.findall(r"[a-z]+", text.lower())
        if len(w) >= MIN_KEYWORD_LENGTH and w not in STOPWORDS
    ]


def extract_keywords(text: str, limit: int = KEYWORDS_PER_PAPER) -> List[str]:
    """Distinct longer words in order of first appearance."""
    return list(dict.fromkeys(_words(text)))[:limit]


def centroid_keywords(members: List[MicroOutput], limit: int = CENTROID_SIZE) -> List[str]:
    """Most frequent longer words across member titles and contributions."""
    counts = Counter(w for item in members for w in _words(_paper_text(item)))
    return [word for word, _ in counts.most_common(limit)]


def cluster_cohesion(members: List[MicroOutput]) -> float:
    """Average pairwise Jaccard similarity of member keyword sets."""
    if len(members) <= 1:
        return 1.0
    keyword_sets = [set(extract_keywords(_paper_text(item))) for item in members]
    pairs = list(itertools.combinations(keyword_sets, 2))
    return sum(jaccard_similarity(a, b, empty=0.0) for a, b in pairs) / len(pairs)


def identify_theme(cluster_id: int, keywords: List[str]) -> ClusterTheme:
    top = keywords[:THEME_KEYWORDS]
    label = ", ".join(top) if top else f"cluster {cluster_id}"
    return ClusterTheme(label=label, keywords=top, description=f"Cluster focused on {label}")


def synthesize_contributions(members: List[MicroOutput]) -> List[ContributionGroup]:
    grouped: Dict[str, list] = {}
    for item in members:
        for contribution in item.contributions:
            grouped.setdefault(contribution.type or "general", []).append(contribution)

    return [
        ContributionGroup(
            type=ctype,
            count=len(contribs),
            summary=f"{len(contribs)} contributions in {ctype}",
            examples=[c.description for c in contribs[:3]],
            avg_confidence=sum(c.confidence for c in contribs) / len(contribs),
        )
        for ctype, contribs in grouped.items()
    ]


def synthesize_gaps(members: List[MicroOutput]) -> List[GapGroup]:
    """Group member gaps by priority, keeping a few distinct descriptions each."""
    groups = []
    all_gaps = [gap for item in members for gap in item.research_gaps]
    for priority in PRIORITY_ORDER:
        matching = [g for g in all_gaps if g.priority == priority]
        if not matching:
            continue
        distinct = list(dict.fromkeys(g.description for g in matching))
        groups.append(GapGroup(priority=priority, count=len(matching), gaps=distinct[:GAPS_PER_GROUP]))
    return groups


def common_methodologies(members: List[MicroOutput]) -> List[MethodologyFrequency]:
    """Methodology keywords occurring at least three times across the cluster."""
    occurrences: Counter = Counter()
    papers_using: Counter = Counter()
    for item in members:
        text = " ".join([
            _paper_text(item),
            item.methodology.approach,
            " ".join(item.methodology.techniques),
        ]).lower()
        for method in METHODOLOGY_KEYWORDS:
            hits = len(re.findall(rf"\b{re.escape(method)}\b", text))
            if hits:
                occurrences[method] += hits
                papers_using[method] += 1

    frequent = [(m, n) for m, n in occurrences.most_common() if n >= MIN_METHOD_OCCURRENCES]
    return [
        MethodologyFrequency(
            method=method,
            frequency=count,
            percentage=papers_using[method] / len(members) * 100,
        )
        for method, count in frequent[:MAX_METHODOLOGIES]
    ]


def identify_trends(members: List[MicroOutput]) -> List[TrendSignal]:
    trends = []
    years = sorted(item.year for item in members if item.year is not None)
    if len(years) >= 3 and any(y > max(years[:3]) for y in years[-3:]):
        trends.append(TrendSignal(
            type="increasing_activity",
            description="Growing research interest in recent years",
            confidence=0.7,
        ))

    recent = [item for item in members if (item.year or 0) >= RECENT_YEAR]
    if recent and sum(item.citations for item in recent) / len(recent) > HIGH_IMPACT_CITATIONS:
        trends.append(TrendSignal(
            type="high_impact",
            description="Recent papers showing high citation impact",
            confidence=0.8,
        ))
    return trends


def summarize_cluster(cluster: Cluster) -> ClusterSummary:
    members = cluster.members
    keywords = centroid_keywords(members)
    cohesion = cluster_cohesion(members)
    years = [item.year for item in members if item.year is not None]

    return ClusterSummary(
        cluster_id=cluster.cluster_id,
        theme=identify_theme(cluster.cluster_id, keywords),
        size=cluster.size,
        cohesion=cohesion,
        papers=[
            ClusterPaper(paper_id=item.paper_id, title=item.title, year=item.year, citations=item.citations)
            for item in members
        ],
        centroid_keywords=keywords,
        key_contributions=synthesize_contributions(members),
        identified_gaps=synthesize_gaps(members),
        common_methodologies=common_methodologies(members),
        trends=identify_trends(members),
        year_range=YearRange(min=min(years), max=max(years)) if years else YearRange(),
        avg_citations=sum(item.citations for item in members) / cluster.size,
        confidence=cohesion,
    )


def identify_cross_cluster_patterns(summaries: List[ClusterSummary]) -> List[CrossClusterPattern]:
    patterns = []

    method_clusters: Counter = Counter()
    for summary in summaries:
        for method in {m.method for m in summary.common_methodologies}:
            method_clusters[method] += 1
    shared = [m for m, n in method_clusters.most_common() if n >= 2]
    if shared:
        patterns.append(CrossClusterPattern(
            type="methodology_overlap",
            description=f"Common methodologies across clusters: {', '.join(shared[:5])}",
            confidence=0.75,
        ))

    mins = [s.year_range.min for s in summaries if s.year_range.min is not None]
    maxs = [s.year_range.max for s in summaries if s.year_range.max is not None]
    if mins and maxs and max(maxs) - min(mins) > TEMPORAL_SPREAD_YEARS:
        patterns.append(CrossClusterPattern(
            type="temporal_evolution",
            description=f"Research spanning {max(maxs) - min(mins)} years ({min(mins)}-{max(maxs)})",
            confidence=0.8,
        ))
    return patterns


def identify_thematic_gaps(summaries: List[ClusterSummary]) -> List[ThematicGap]:
    gaps = []
    for summary in summaries:
        total = sum(group.count for group in summary.identified_gaps)
        if total > summary.size:
            gaps.append(ThematicGap(
                theme=summary.theme.label,
                description=f"High concentration of research gaps in {summary.theme.label}",
                priority="high",
                confidence=0.8,
                gap_count=total,
            ))

    for a, b in itertools.combinations(summaries, 2):
        gaps.append(ThematicGap(
            theme=f"{a.theme.label} ∩ {b.theme.label}",
            description=f"Under-explored intersection between {a.theme.label} and {b.theme.label}",
            priority="medium",
            confidence=0.6,
        ))
    return gaps


def meso_confidence(summaries: List[ClusterSummary]) -> float:
    if not summaries:
        return 0.5
    avg_cohesion = sum(s.cohesion for s in summaries) / len(summaries)
    avg_size = sum(s.size for s in summaries) / len(summaries)

    confidence = avg_cohesion * 0.6
    if avg_size >= 3:
        confidence += 0.2
    if len(summaries) >= 3:
        confidence += 0.1
    return min(confidence, 0.95)


class MesoAgentProcessor(BaseAgentProcessor):
    """Clusters and synthesizes one iteration's micro outputs."""

    agent_type = AgentType.MESO

    def __init__(self, context_store: ContextStore, cluster_strategy: Optional[ClusterStrategy] = None):
        super().__init__(context_store)
        self.cluster_strategy = cluster_strategy or HashBucketClusterStrategy()

    def read_micro_outputs(self, run_id: str, iteration: int) -> List[MicroOutput]:
        prefix = f"{MICRO_OUTPUT_PREFIX}{iteration}_"
        outputs = []
        for listing in self.context_store.list(run_id, prefix=prefix):
            record = self.context_store.read(run_id, listing.agent_id, listing.context_key)
            if record is not None and record.data:
                outputs.append(MicroOutput.model_validate(record.data))
        return outputs

    async def run(self, payload: MesoJobPayload) -> MesoOutput:
        started = time.monotonic()
        micro_outputs = self.read_micro_outputs(payload.run_id, payload.iteration)
        if not micro_outputs:
            raise NoInputsError(payload.run_id, payload.iteration, "micro outputs")

        clusters = self.cluster_strategy.cluster(micro_outputs)
        logger.info(
            f"Meso agent {payload.agent_id}: {len(micro_outputs)} papers in {len(clusters)} clusters"
        )

        summaries = [summarize_cluster(cluster) for cluster in clusters]
        sizes = [s.size for s in summaries]

        output = MesoOutput(
            iteration=payload.iteration,
            agent_id=payload.agent_id,
            total_papers=len(micro_outputs),
            total_clusters=len(summaries),
            clusters=summaries,
            patterns=identify_cross_cluster_patterns(summaries),
            thematic_gaps=identify_thematic_gaps(summaries),
            statistics=MesoStatistics(
                avg_cluster_size=sum(sizes) / len(sizes),
                min_cluster_size=min(sizes),
                max_cluster_size=max(sizes),
                total_contributions=sum(len(m.contributions) for m in micro_outputs),
                total_gaps=sum(len(m.research_gaps) for m in micro_outputs),
            ),
            confidence=meso_confidence(summaries),
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )

        data = output.model_dump(mode="json")
        self.context_store.write(
            payload.run_id,
            payload.agent_id,
            meso_output_key(payload.iteration),
            data,
            mode=WriteMode.OVERWRITE,
            metadata={"iteration": payload.iteration, "cluster_count": len(summaries)},
        )
        self._store_result(payload, ResultType.SYNTHESIS, data, output.confidence)
        return output
