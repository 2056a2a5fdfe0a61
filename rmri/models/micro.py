"""Per-paper extraction output."""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class Contribution(BaseModel):
    type: str
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: Optional[str] = None


class Limitation(BaseModel):
    type: str
    description: str
    severity: str = "medium"
    confidence: float = Field(ge=0.0, le=1.0)


class ResearchGap(BaseModel):
    """A research opportunity identified for one paper."""

    description: str
    type: str = "inferred"
    priority: str = "medium"
    rationale: str = ""
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    source: str = "inferred"


class EmbeddingVector(BaseModel):
    """
    Placeholder embedding.

    ``vector`` holds tokens rather than floats; see ``NullEmbedder``.
    """

    dimension: int
    vector: List[str] = Field(default_factory=list)
    text_length: int = 0


class EmbeddingBundle(BaseModel):
    title: EmbeddingVector
    abstract: EmbeddingVector
    combined: EmbeddingVector


class Reproducibility(BaseModel):
    score: float
    level: str
    indicators: Dict[str, bool] = Field(default_factory=dict)


class MethodologySummary(BaseModel):
    approach: str = "Not specified"
    techniques: List[str] = Field(default_factory=list)
    datasets: List[str] = Field(default_factory=list)
    metrics: List[str] = Field(default_factory=list)
    reproducibility: Reproducibility


class MicroOutput(BaseModel):
    """Structured assessment of one paper for one iteration."""

    paper_id: str
    title: str
    authors: List[str] = Field(default_factory=list)
    year: Optional[int] = None
    citations: int = 0
    venue: Optional[str] = None
    sections: List[str] = Field(default_factory=list)

    contributions: List[Contribution] = Field(default_factory=list)
    limitations: List[Limitation] = Field(default_factory=list)
    research_gaps: List[ResearchGap] = Field(default_factory=list)
    methodology: MethodologySummary
    embeddings: EmbeddingBundle

    analysis_source: str = "llm"
    gap_source: str = "llm_json"
    confidence: float = Field(ge=0.0, le=1.0)
    processing_time_ms: int = 0
    iteration: int
    agent_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
