"""Pydantic models exchanged between pipeline tiers."""

from rmri.models.paper import Paper
from rmri.models.micro import (
    Contribution,
    EmbeddingBundle,
    EmbeddingVector,
    Limitation,
    MethodologySummary,
    MicroOutput,
    Reproducibility,
    ResearchGap,
)
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
from rmri.models.meta import (
    ConvergenceResult,
    CrossDomainPattern,
    GapScores,
    MetaOutput,
    MetaStatistics,
    RankedGap,
    ResearchDirection,
    ResearchFrontier,
)
from rmri.models.jobs import MesoJobPayload, MetaJobPayload, MicroJobPayload

__all__ = [
    "Paper",
    "Contribution",
    "EmbeddingBundle",
    "EmbeddingVector",
    "Limitation",
    "MethodologySummary",
    "MicroOutput",
    "Reproducibility",
    "ResearchGap",
    "ClusterPaper",
    "ClusterSummary",
    "ClusterTheme",
    "ContributionGroup",
    "CrossClusterPattern",
    "GapGroup",
    "MesoOutput",
    "MesoStatistics",
    "MethodologyFrequency",
    "ThematicGap",
    "TrendSignal",
    "YearRange",
    "ConvergenceResult",
    "CrossDomainPattern",
    "GapScores",
    "MetaOutput",
    "MetaStatistics",
    "RankedGap",
    "ResearchDirection",
    "ResearchFrontier",
    "MesoJobPayload",
    "MetaJobPayload",
    "MicroJobPayload",
]
