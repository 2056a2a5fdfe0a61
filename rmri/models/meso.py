"""Per-iteration clustering output."""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


class ClusterTheme(BaseModel):
    label: str
    keywords: List[str] = Field(default_factory=list)
    description: str = ""


class ClusterPaper(BaseModel):
    paper_id: str
    title: str
    year: Optional[int] = None
    citations: int = 0


class ContributionGroup(BaseModel):
    type: str
    count: int
    summary: str
    examples: List[str] = Field(default_factory=list)
    avg_confidence: float


class GapGroup(BaseModel):
    """Cluster gaps sharing one priority level."""

    priority: str
    count: int
    gaps: List[str] = Field(default_factory=list)


class MethodologyFrequency(BaseModel):
    method: str
    frequency: int
    percentage: float


class TrendSignal(BaseModel):
    type: str
    description: str
    confidence: float


class YearRange(BaseModel):
    min: Optional[int] = None
    max: Optional[int] = None

    @property
    def span(self) -> int:
        if self.min is None or self.max is None:
            return 0
        return self.max - self.min


class ClusterSummary(BaseModel):
    cluster_id: int
    theme: ClusterTheme
    size: int
    cohesion: float
    papers: List[ClusterPaper] = Field(default_factory=list)
    centroid_keywords: List[str] = Field(default_factory=list)
    key_contributions: List[ContributionGroup] = Field(default_factory=list)
    identified_gaps: List[GapGroup] = Field(default_factory=list)
    common_methodologies: List[MethodologyFrequency] = Field(default_factory=list)
    trends: List[TrendSignal] = Field(default_factory=list)
    year_range: YearRange = Field(default_factory=YearRange)
    avg_citations: float = 0.0
    confidence: float = 0.0


class CrossClusterPattern(BaseModel):
    type: str
    description: str
    confidence: float


class ThematicGap(BaseModel):
    theme: str
    description: str
    priority: str
    confidence: float
    gap_count: Optional[int] = None


class MesoStatistics(BaseModel):
    avg_cluster_size: float
    min_cluster_size: int
    max_cluster_size: int
    total_contributions: int
    total_gaps: int


class MesoOutput(BaseModel):
    """Thematic synthesis of one iteration's micro outputs."""

    iteration: int
    agent_id: str
    total_papers: int
    total_clusters: int
    clusters: List[ClusterSummary] = Field(default_factory=list)
    patterns: List[CrossClusterPattern] = Field(default_factory=list)
    thematic_gaps: List[ThematicGap] = Field(default_factory=list)
    statistics: MesoStatistics
    confidence: float
    processing_time_ms: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
