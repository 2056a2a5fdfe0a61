"""
Micro agent: per-paper extraction.

For one paper, detects sections, builds placeholder embeddings, asks the
LLM for an analysis (falling back to keyword-triggered sentence
extraction), derives contributions, limitations and methodology, and
extracts research gaps through ``decode_with_recovery`` with a rule-based
last resort. The output is written to the context store under
``micro_output_<iteration>_<paper_id>`` in append mode.

Extraction problems never fail the job; only storage errors do.
"""

import logging
import re
import time
from dataclasses import dataclass, fields
from typing import Dict, List, Optional, Tuple

from rmri.agents.base import BaseAgentProcessor
from rmri.agents.embeddings import Embedder, NullEmbedder
from rmri.agents.gap_decoding import decode_with_recovery
from rmri.context.store import ContextStore, WriteMode
from rmri.core.errors import LLMFallbackExhaustedError
from rmri.core.llm import LLMClient, LLMRequestConfig
from rmri.core.prompts import GAP_EXTRACTION, PAPER_ANALYSIS
from rmri.core.workflow import AgentType
from rmri.db.models import ResultType
from rmri.models.jobs import MicroJobPayload
from rmri.models.micro import (
    Contribution,
    EmbeddingBundle,
    Limitation,
    MethodologySummary,
    MicroOutput,
    Reproducibility,
    ResearchGap,
)
from rmri.models.paper import Paper

logger = logging.getLogger(__name__)

MICRO_OUTPUT_PREFIX = "micro_output_"

SECTION_PATTERNS = {
    "introduction": re.compile(r"\bintroduction\b"),
    "methodology": re.compile(r"\b(methodology|methods|approach)\b"),
    "results": re.compile(r"\b(results|findings|experiments)\b"),
    "discussion": re.compile(r"\b(discussion|analysis)\b"),
    "conclusion": re.compile(r"\b(conclusion|summary)\b"),
    "related_work": re.compile(r"\b(related work|background|literature review)\b"),
}

PROBLEM_KEYWORDS = ("problem", "challenge", "issue", "addresses", "tackles")
NOVELTY_KEYWORDS = ("novel", "new", "first", "propose", "introduce", "original")
APPROACH_KEYWORDS = ("method", "approach", "technique", "algorithm", "framework")
FINDINGS_KEYWORDS = ("result", "finding", "show", "demonstrate", "achieve")
LIMITATION_KEYWORDS = ("limitation", "constraint", "weakness", "drawback")
FUTURE_WORK_KEYWORDS = ("future work", "future research", "future direction")
CONTRIBUTION_KEYWORDS = ("contribute", "contribution", "propose", "introduce", "develop")

COMMON_TECHNIQUES = (
    "neural network", "deep learning", "machine learning",
    "regression", "classification", "clustering",
    "optimization", "algorithm", "model",
)
COMMON_METRICS = (
    "accuracy", "precision", "recall", "f1", "auc", "roc",
    "rmse", "mae", "mse", "performance", "efficiency", "effectiveness",
)
DATASET_RE = re.compile(r"\b([A-Z][A-Za-z0-9-]+)\s+dataset")

BASE_CONFIDENCE = 0.5
CONFIDENCE_STEP = 0.15
MAX_CONFIDENCE = 0.95

GENERIC_METHODOLOGICAL_GAP = "Independent replication and broader evaluation of the proposed approach"

_ANALYSIS_LINE_RE = re.compile(
    r"^\s*(?:\d+[.)]\s*)?[*_#\s]*(problem|novelty|approach|findings|limitations|future work)[*_\s]*[:\-]\s*(.+?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_ANALYSIS_FIELDS = {
    "problem": "problem",
    "novelty": "novelty",
    "approach": "approach",
    "findings": "findings",
    "limitations": "limitations",
    "future work": "future_work",
}


@dataclass
class PaperAnalysis:
    """Free-form analysis split into labelled parts. Missing parts are None."""
    problem: Optional[str] = None
    novelty: Optional[str] = None
    approach: Optional[str] = None
    findings: Optional[str] = None
    limitations: Optional[str] = None
    future_work: Optional[str] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def fill_from(self, other: "PaperAnalysis") -> "PaperAnalysis":
        """Copy over parts this analysis is missing."""
        for f in fields(self):
            if getattr(self, f.name) is None:
                setattr(self, f.name, getattr(other, f.name))
        return self

    def as_text(self) -> str:
        lines = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value:
                lines.append(f"{f.name.replace('_', ' ').title()}: {value}")
        return "\n".join(lines) or "No analysis available"


# ============================================================================
# Rule-based helpers
# ============================================================================

def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in re.split(r"[.!?]+", text or "") if s.strip()]


def first_sentence_with(text: str, keywords) -> Optional[str]:
    for sentence in split_sentences(text):
        lower = sentence.lower()
        if any(kw in lower for kw in keywords):
            return sentence
    return None


def detect_sections(paper: Paper) -> List[str]:
    text = (paper.full_text or paper.abstract or "").lower()
    return [name for name, pattern in SECTION_PATTERNS.items() if pattern.search(text)]


def rule_based_analysis(paper: Paper) -> PaperAnalysis:
    """Keyword-triggered sentence extraction from the abstract and full text."""
    body = f"{paper.abstract} {paper.full_text}"
    return PaperAnalysis(
        problem=first_sentence_with(paper.abstract, PROBLEM_KEYWORDS),
        novelty=first_sentence_with(paper.abstract, NOVELTY_KEYWORDS),
        approach=first_sentence_with(paper.abstract, APPROACH_KEYWORDS),
        findings=first_sentence_with(paper.abstract, FINDINGS_KEYWORDS),
        limitations=first_sentence_with(body, LIMITATION_KEYWORDS),
        future_work=first_sentence_with(body, FUTURE_WORK_KEYWORDS),
    )


def parse_analysis(text: str) -> PaperAnalysis:
    """Pull labelled lines (``Problem: ...``) out of an LLM analysis."""
    analysis = PaperAnalysis()
    for match in _ANALYSIS_LINE_RE.finditer(text or ""):
        field_name = _ANALYSIS_FIELDS[match.group(1).lower()]
        value = match.group(2).strip()
        if value and getattr(analysis, field_name) is None:
            setattr(analysis, field_name, value)
    return analysis


def extract_contributions(paper: Paper, analysis: PaperAnalysis) -> List[Contribution]:
    contributions = []
    if analysis.novelty:
        contributions.append(Contribution(
            type="novelty",
            description=analysis.novelty,
            confidence=0.8,
            evidence="From paper analysis",
        ))

    seen = {c.description for c in contributions}
    for sentence in split_sentences(paper.abstract):
        lower = sentence.lower()
        if sentence not in seen and any(kw in lower for kw in CONTRIBUTION_KEYWORDS):
            contributions.append(Contribution(
                type="extracted",
                description=sentence,
                confidence=0.7,
                evidence="From abstract",
            ))
            seen.add(sentence)
    return contributions


def extract_limitations(paper: Paper, analysis: PaperAnalysis) -> List[Limitation]:
    limitations = []
    if analysis.limitations:
        limitations.append(Limitation(
            type="stated",
            description=analysis.limitations,
            severity="medium",
            confidence=0.9,
        ))

    abstract = (paper.abstract or "").lower()
    if "validation" not in abstract and "evaluat" not in abstract:
        limitations.append(Limitation(
            type="methodological",
            description="Limited validation or evaluation mentioned",
            severity="medium",
            confidence=0.6,
        ))
    if "small dataset" in abstract or "limited data" in abstract:
        limitations.append(Limitation(
            type="data",
            description="Dataset size limitations mentioned",
            severity="high",
            confidence=0.8,
        ))
    return limitations


def rule_based_gaps(paper: Paper, analysis: PaperAnalysis, limitations: List[Limitation]) -> List[ResearchGap]:
    """Deterministic gaps from stated future work and limitations."""
    gaps = []
    if analysis.future_work:
        gaps.append(ResearchGap(
            description=analysis.future_work,
            type="stated_future_work",
            priority="high",
            rationale="Future work stated by the authors",
            confidence=0.85,
            source="paper_explicit",
        ))

    for limitation in limitations:
        if limitation.type in ("stated", "data"):
            gaps.append(ResearchGap(
                description=f"Addressing limitation: {limitation.description}",
                type="limitation_derived",
                priority="high" if limitation.severity == "high" else "medium",
                rationale="Derived from a limitation of the paper",
                confidence=0.7,
                source="inferred",
            ))

    abstract = (paper.abstract or "").lower()
    if "comparison" not in abstract and "baseline" not in abstract:
        gaps.append(ResearchGap(
            description="Lack of comparative evaluation with baselines",
            type="methodological",
            priority="medium",
            rationale="No comparison or baseline mentioned",
            confidence=0.6,
            source="inferred",
        ))

    gaps.append(ResearchGap(
        description=GENERIC_METHODOLOGICAL_GAP,
        type="methodological",
        priority="low",
        rationale="Fallback gap when no specific gaps could be extracted",
        confidence=0.5,
        source="rule_based",
    ))
    return gaps


def assess_reproducibility(paper: Paper) -> Reproducibility:
    text = (paper.abstract or paper.full_text or "").lower()
    indicators = {
        "code_available": "code" in text and ("available" in text or "github" in text),
        "data_available": "dataset" in text and "available" in text,
        "detailed_method": "detail" in text or "implement" in text,
        "open_source": "open source" in text or "open-source" in text,
    }
    score = sum(indicators.values()) / len(indicators)
    level = "high" if score > 0.5 else "medium" if score > 0.25 else "low"
    return Reproducibility(score=score, level=level, indicators=indicators)


def extract_methodology(paper: Paper, analysis: PaperAnalysis) -> MethodologySummary:
    abstract = paper.abstract or ""
    lower = abstract.lower()
    return MethodologySummary(
        approach=analysis.approach or "Not specified",
        techniques=[t for t in COMMON_TECHNIQUES if t in lower],
        datasets=list(dict.fromkeys(DATASET_RE.findall(abstract))),
        metrics=[m for m in COMMON_METRICS if re.search(rf"\b{re.escape(m)}\b", lower)],
        reproducibility=assess_reproducibility(paper),
    )


def calculate_confidence(*extractions) -> float:
    """Base confidence plus a step per non-empty extraction, capped below certainty."""
    confidence = BASE_CONFIDENCE + CONFIDENCE_STEP * sum(1 for e in extractions if e)
    return min(confidence, MAX_CONFIDENCE)


def micro_output_key(iteration: int, paper_id: str) -> str:
    return f"{MICRO_OUTPUT_PREFIX}{iteration}_{paper_id}"


# ============================================================================
# Processor
# ============================================================================

class MicroAgentProcessor(BaseAgentProcessor):
    """Analyzes a single paper."""

    agent_type = AgentType.MICRO

    def __init__(
        self,
        context_store: ContextStore,
        llm_client: Optional[LLMClient] = None,
        embedder: Optional[Embedder] = None
    ):
        super().__init__(context_store)
        self.llm_client = llm_client
        self.embedder = embedder or NullEmbedder()

    async def run(self, payload: MicroJobPayload) -> MicroOutput:
        started = time.monotonic()
        paper = payload.paper
        logger.info(f"Micro agent {payload.agent_id} analyzing: {paper.title[:100]}")

        sections = detect_sections(paper)
        embeddings = self._build_embeddings(paper)
        analysis, analysis_source = await self._analyze(paper, payload.llm_config)
        contributions = extract_contributions(paper, analysis)
        limitations = extract_limitations(paper, analysis)
        gaps, gap_source = await self._identify_gaps(paper, analysis, limitations, payload.llm_config)
        methodology = extract_methodology(paper, analysis)
        confidence = calculate_confidence(contributions, limitations, gaps)

        output = MicroOutput(
            paper_id=paper.paper_id,
            title=paper.title,
            authors=paper.authors,
            year=paper.year,
            citations=paper.citations,
            venue=paper.venue,
            sections=sections,
            contributions=contributions,
            limitations=limitations,
            research_gaps=gaps,
            methodology=methodology,
            embeddings=embeddings,
            analysis_source=analysis_source,
            gap_source=gap_source,
            confidence=confidence,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            iteration=payload.iteration,
            agent_id=payload.agent_id,
        )

        data = output.model_dump(mode="json")
        self.context_store.write(
            payload.run_id,
            payload.agent_id,
            micro_output_key(payload.iteration, paper.paper_id),
            data,
            mode=WriteMode.APPEND,
            metadata={"paper_title": paper.title, "iteration": payload.iteration},
        )
        self._store_result(payload, ResultType.GAPS, data, confidence)

        logger.info(
            f"Micro agent {payload.agent_id}: {len(contributions)} contributions, "
            f"{len(limitations)} limitations, {len(gaps)} gaps ({gap_source})"
        )
        return output

    def _build_embeddings(self, paper: Paper) -> EmbeddingBundle:
        combined = " ".join([paper.title, paper.abstract or "", (paper.full_text or "")[:2000]])
        return EmbeddingBundle(
            title=self.embedder.embed(paper.title),
            abstract=self.embedder.embed(paper.abstract or ""),
            combined=self.embedder.embed(combined),
        )

    async def _analyze(self, paper: Paper, llm_config: LLMRequestConfig) -> Tuple[PaperAnalysis, str]:
        fallback = rule_based_analysis(paper)
        if self.llm_client is None:
            return fallback, "rule_based"

        prompt = PAPER_ANALYSIS.get_full_prompt(
            title=paper.title,
            abstract=paper.abstract or "Not available",
            excerpt=(paper.full_text or "")[:3000] or "Not available",
        )
        try:
            result = await self.llm_client.generate(prompt["prompt"], llm_config, system=prompt["system"])
        except LLMFallbackExhaustedError as e:
            logger.warning(f"Analysis LLM call failed for {paper.paper_id}, using rule-based extraction: {e}")
            return fallback, "rule_based"

        analysis = parse_analysis(result.output)
        if analysis.is_empty():
            logger.warning(f"Analysis for {paper.paper_id} had no usable content, using rule-based extraction")
            return fallback, "rule_based"
        return analysis.fill_from(fallback), "llm"

    async def _identify_gaps(
        self,
        paper: Paper,
        analysis: PaperAnalysis,
        limitations: List[Limitation],
        llm_config: LLMRequestConfig
    ) -> Tuple[List[ResearchGap], str]:
        if self.llm_client is not None:
            prompt = GAP_EXTRACTION.get_full_prompt(
                title=paper.title,
                abstract=paper.abstract or "Not available",
                analysis=analysis.as_text(),
            )
            try:
                result = await self.llm_client.generate(
                    prompt["prompt"], llm_config, json_mode=True, system=prompt["system"]
                )
            except LLMFallbackExhaustedError as e:
                logger.warning(f"Gap extraction LLM call failed for {paper.paper_id}: {e}")
            else:
                decoded = decode_with_recovery(result.output, truncated=result.is_truncated)
                if decoded.ok:
                    return decoded.gaps, _GAP_SOURCES[decoded.strategy]
                logger.warning(
                    f"Could not decode gaps for {paper.paper_id} ({decoded.error}); using rule-based gaps"
                )

        return rule_based_gaps(paper, analysis, limitations), "rule_based"


_GAP_SOURCES: Dict[str, str] = {
    "json": "llm_json",
    "repaired_json": "llm_repaired",
    "text": "llm_text",
}
