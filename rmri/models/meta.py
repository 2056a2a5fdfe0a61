"""Per-iteration cross-cluster synthesis output."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class GapScores(BaseModel):
    """Four scoring axes, each in [0, 1]."""

    importance: float = Field(ge=0.0, le=1.0)
    novelty: float = Field(ge=0.0, le=1.0)
    feasibility: float = Field(ge=0.0, le=1.0)
    impact: float = Field(ge=0.0, le=1.0)


class RankedGap(BaseModel):
    description: str
    type: str = "inferred"
    theme: Optional[str] = None
    priority: Optional[str] = None
    scores: GapScores
    total_score: float = Field(ge=0.0, le=1.0)
    confidence: float = 0.7
    source: str
    rationale: Optional[str] = None
    rank: int = 0


class CrossDomainPattern(BaseModel):
    type: str
    description: str
    confidence: float
    theme: Optional[str] = None
    methodology: Optional[str] = None
    frequency: Optional[int] = None
    year_min: Optional[int] = None
    year_max: Optional[int] = None


class ResearchFrontier(BaseModel):
    type: str
    description: str
    confidence: float
    items: List[Dict[str, Any]] = Field(default_factory=list)


class ResearchDirection(BaseModel):
    priority: int
    direction: str
    theme: Optional[str] = None
    rationale: str
    expected_impact: float
    feasibility: float
    novelty: float
    confidence: float


class ConvergenceResult(BaseModel):
    converged: bool
    similarity: float
    reason: str


class MetaStatistics(BaseModel):
    total_clusters: int
    total_papers: int
    total_gaps_identified: int
    unique_themes: int
    domains_covered: int


class MetaOutput(BaseModel):
    """Ranked gaps and convergence verdict for one iteration."""

    iteration: int
    agent_id: str
    cross_domain_patterns: List[CrossDomainPattern] = Field(default_factory=list)
    ranked_gaps: List[RankedGap] = Field(default_factory=list)
    research_frontiers: List[ResearchFrontier] = Field(default_factory=list)
    recommended_directions: List[ResearchDirection] = Field(default_factory=list)
    convergence: ConvergenceResult
    statistics: MetaStatistics
    confidence: float
    should_continue: bool
    processing_time_ms: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
