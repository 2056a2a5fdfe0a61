"""
Prompt templates for the micro-tier LLM calls.

Templates use ``${variable}`` placeholders. Every declared variable must be
supplied; stray ``$`` signs in paper text are left as they are.
"""

from dataclasses import dataclass, field
from string import Template
from typing import Dict, List, Optional


@dataclass(frozen=True)
class PromptTemplate:
    """A named user prompt plus an optional system prompt."""

    name: str
    template: str
    variables: List[str] = field(default_factory=list)
    system_prompt: Optional[str] = None

    def render(self, **values) -> str:
        """Fill the placeholders; raises ``KeyError`` naming any missing variable."""
        absent = sorted(v for v in self.variables if v not in values)
        if absent:
            raise KeyError(f"Prompt '{self.name}' needs: {', '.join(absent)}")
        return Template(self.template).safe_substitute(values)

    def get_full_prompt(self, **values) -> Dict[str, str]:
        return {"system": self.system_prompt or "", "prompt": self.render(**values)}


PAPER_ANALYSIS = PromptTemplate(
    name="paper_analysis",
    system_prompt="""You are a careful research analyst. You read a single paper and report
what it does, how, what it found and where it falls short. Quote or paraphrase the
paper's own wording where possible and do not invent results.""",
    template="""Analyze this research paper and provide a comprehensive assessment:

Title: ${title}
Abstract: ${abstract}

Excerpt:
${excerpt}

Provide a structured analysis with one labelled line per item:
Problem: the main research problem addressed
Novelty: the novel contributions
Approach: the methodological approach
Findings: the key findings
Limitations: the stated limitations
Future work: potential gaps or future work

Be specific and cite evidence from the text where possible.""",
    variables=["title", "abstract", "excerpt"],
)


GAP_EXTRACTION = PromptTemplate(
    name="gap_extraction",
    system_prompt="""You identify research gaps: concrete, unaddressed questions or weaknesses
that future work could tackle. You always answer with JSON only.""",
    template="""Identify the research gaps left open by this paper.

Title: ${title}
Abstract: ${abstract}

Analysis:
${analysis}

Return a JSON array (or an object with a "gaps" array). Each item must have:
- "description": one sentence describing the gap
- "type": one of "methodological", "empirical", "theoretical", "data", "application"
- "priority": one of "high", "medium", "low"
- "rationale": why this is a gap, citing the paper

Example:
[
  {
    "description": "No evaluation on non-English corpora",
    "type": "empirical",
    "priority": "high",
    "rationale": "All experiments use English benchmarks only"
  }
]

Return between 2 and 6 gaps. Output JSON only, with no commentary.""",
    variables=["title", "abstract", "analysis"],
)
