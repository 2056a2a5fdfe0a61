"""
Tests for the micro agent: rule-based extraction and the LLM recovery ladder.
"""

import json

import pytest

from rmri.agents.micro import (
    GENERIC_METHODOLOGICAL_GAP,
    MicroAgentProcessor,
    calculate_confidence,
    detect_sections,
    extract_contributions,
    extract_limitations,
    extract_methodology,
    micro_output_key,
    parse_analysis,
    rule_based_analysis,
    rule_based_gaps,
)
from rmri.core.llm import LLMClient
from rmri.core.workflow import AgentStatus, AgentType
from rmri.db import get_session
from rmri.db.models import ResultType
from rmri.db.operations import create_agent, get_agent, list_logs, list_results
from rmri.jobs.queue import JobOptions, JobQueue
from rmri.models.jobs import MicroJobPayload
from rmri.models.micro import MicroOutput
from rmri.models.paper import Paper


LLM_ANALYSIS = """Problem: Protein contact maps are hard to predict.
Novelty: A graph network over residue pairs.
Approach: Message passing over predicted contacts.
Findings: Higher accuracy on CASP14.
Limitations: Depends on alignment depth.
Future work: Extend to multimeric complexes."""

LLM_GAPS = json.dumps([
    {"description": "No evaluation on orphan proteins without alignments", "type": "empirical",
     "priority": "high", "rationale": "All benchmarks have deep MSAs"},
    {"description": "Runtime cost on long sequences is not reported", "type": "methodological",
     "priority": "low", "rationale": "Only short chains timed"},
])


def payload_for(paper: Paper, run_id: str = "run-test", iteration: int = 1) -> MicroJobPayload:
    return MicroJobPayload(
        run_id=run_id,
        agent_id=f"micro-{run_id}-{iteration}-{paper.paper_id}",
        iteration=iteration,
        paper=paper,
    )


class TestRuleBasedHelpers:

    def test_detect_sections(self):
        paper = Paper(title="t", full_text="1 Introduction ... 2 Related work ... 3 Methods ... 5 Conclusion")
        assert detect_sections(paper) == ["introduction", "methodology", "conclusion", "related_work"]

    def test_rule_based_analysis(self, sample_papers):
        analysis = rule_based_analysis(sample_papers[0])

        assert analysis.problem == "Protein folding remains a central challenge in structural biology"
        assert analysis.novelty.startswith("We propose a novel graph neural network")
        assert analysis.limitations == "A limitation is the reliance on multiple sequence alignments"
        assert analysis.future_work == "Future work will extend the model to protein complexes"

    def test_parse_analysis_labelled_lines(self):
        analysis = parse_analysis("**Problem**: slow folding\n2. Future work - bigger proteins\nnoise")

        assert analysis.problem == "slow folding"
        assert analysis.future_work == "bigger proteins"
        assert analysis.novelty is None

    def test_parse_analysis_empty(self):
        assert parse_analysis("").is_empty()

    def test_contributions(self, sample_papers):
        paper = sample_papers[0]
        contributions = extract_contributions(paper, rule_based_analysis(paper))

        assert contributions[0].type == "novelty"
        assert contributions[0].confidence == 0.8
        assert len({c.description for c in contributions}) == len(contributions)

    def test_limitations(self, sample_papers):
        paper = sample_papers[1]
        limitations = extract_limitations(paper, rule_based_analysis(paper))
        types = [l.type for l in limitations]

        assert "methodological" in types
        assert "data" in types
        assert next(l for l in limitations if l.type == "data").severity == "high"

    def test_rule_based_gaps(self, sample_papers):
        paper = sample_papers[0]
        analysis = rule_based_analysis(paper)
        gaps = rule_based_gaps(paper, analysis, extract_limitations(paper, analysis))

        assert gaps[0].source == "paper_explicit"
        assert gaps[0].priority == "high"
        assert any(g.type == "limitation_derived" for g in gaps)
        assert gaps[-1].description == GENERIC_METHODOLOGICAL_GAP

    def test_rule_based_gaps_never_empty(self):
        paper = Paper(title="Untitled", abstract="We compare against a baseline.")
        analysis = rule_based_analysis(paper)
        gaps = rule_based_gaps(paper, analysis, extract_limitations(paper, analysis))

        assert [g.description for g in gaps] == [GENERIC_METHODOLOGICAL_GAP]

    def test_methodology(self):
        paper = Paper(
            title="t",
            abstract="A deep learning model evaluated on the ImageNet dataset reports accuracy and F1. Code available on github.",
        )
        methodology = extract_methodology(paper, rule_based_analysis(paper))

        assert "deep learning" in methodology.techniques
        assert methodology.datasets == ["ImageNet"]
        assert methodology.metrics == ["accuracy", "f1"]
        assert methodology.reproducibility.indicators["code_available"]

    def test_confidence_capped(self):
        assert calculate_confidence() == 0.5
        assert calculate_confidence([1], [], [1]) == pytest.approx(0.8)
        assert calculate_confidence([1], [1], [1], [1], [1]) == 0.95

    def test_output_key(self):
        assert micro_output_key(2, "paper-1") == "micro_output_2_paper-1"

    def test_paper_id_fallbacks(self):
        assert Paper(title="T", doi="10.1/x").paper_id == "10.1/x"
        slug_id = Paper(title="Deep Nets!", year=2020).paper_id
        assert slug_id.startswith("deepnets_2020_")
        assert slug_id == Paper(title="Deep Nets!", year=2020).paper_id
        assert Paper.model_validate({"title": "T", "fullText": "body"}).full_text == "body"

    def test_slug_ids_differ_for_shared_title_prefix(self):
        survey = Paper(title="Deep learning for medical imaging: a survey", year=2020)
        segmentation = Paper(title="Deep learning for medical image segmentation with transformers", year=2020)

        assert survey.paper_id != segmentation.paper_id
        assert not survey.has_explicit_id


class TestMicroAgentProcessor:

    async def test_rule_based_without_llm(self, context_store, sample_papers, run_id):
        processor = MicroAgentProcessor(context_store)
        output = await processor.run(payload_for(sample_papers[0]))

        assert output.analysis_source == "rule_based"
        assert output.gap_source == "rule_based"
        assert output.research_gaps
        assert 0.5 <= output.confidence <= 0.95
        assert output.embeddings.title.vector

    async def test_llm_json_path(self, context_store, sample_papers, run_id, llm_client_factory):
        client = llm_client_factory([LLM_ANALYSIS, LLM_GAPS])
        output = await MicroAgentProcessor(context_store, llm_client=client).run(payload_for(sample_papers[0]))

        assert output.analysis_source == "llm"
        assert output.gap_source == "llm_json"
        assert [g.priority for g in output.research_gaps] == ["high", "low"]
        assert output.contributions[0].description == "A graph network over residue pairs."
        assert output.methodology.approach == "Message passing over predicted contacts."

    async def test_gap_call_uses_json_mode(self, context_store, sample_papers, run_id, fake_provider_factory):
        provider = fake_provider_factory([LLM_ANALYSIS, LLM_GAPS])
        await MicroAgentProcessor(context_store, llm_client=LLMClient({"anthropic": provider})).run(
            payload_for(sample_papers[0])
        )

        assert [c["json_mode"] for c in provider.calls] == [False, True]

    async def test_truncated_gaps_repaired(self, context_store, sample_papers, run_id, llm_client_factory):
        client = llm_client_factory([LLM_ANALYSIS, (LLM_GAPS[:-40], "length")])
        output = await MicroAgentProcessor(context_store, llm_client=client).run(payload_for(sample_papers[0]))

        assert output.gap_source == "llm_repaired"
        assert len(output.research_gaps) == 1

    async def test_prose_gaps_salvaged(self, context_store, sample_papers, run_id, llm_client_factory):
        prose = "Open issues:\n1. Lack of evaluation on membrane proteins\n2. Missing uncertainty estimates per residue"
        client = llm_client_factory([LLM_ANALYSIS, prose])
        output = await MicroAgentProcessor(context_store, llm_client=client).run(payload_for(sample_papers[0]))

        assert output.gap_source == "llm_text"
        assert len(output.research_gaps) == 2

    async def test_provider_failure_falls_back(self, context_store, sample_papers, run_id, llm_client_factory):
        client = llm_client_factory([RuntimeError("down"), RuntimeError("down")])
        output = await MicroAgentProcessor(context_store, llm_client=client).run(payload_for(sample_papers[0]))

        assert output.analysis_source == "rule_based"
        assert output.gap_source == "rule_based"
        assert output.research_gaps

    async def test_writes_context_and_result(self, context_store, sample_papers, run_id):
        paper = sample_papers[0]
        payload = payload_for(paper)
        output = await MicroAgentProcessor(context_store).run(payload)

        record = context_store.read(run_id, payload.agent_id, micro_output_key(1, paper.paper_id))
        assert MicroOutput.model_validate(record.data) == output
        assert record.metadata["mode"] == "append"

        with get_session() as session:
            results = list_results(session, run_id, ResultType.GAPS)
            assert len(results) == 1
            assert results[0].agent_id == payload.agent_id


class TestMicroJob:
    """Processing through the queue updates the agent record."""

    async def test_empty_llm_output_still_completes(self, context_store, sample_papers, run_id, llm_client_factory):
        paper = sample_papers[2]
        payload = payload_for(paper)
        with get_session() as session:
            create_agent(session, payload.agent_id, run_id, 1, AgentType.MICRO)

        processor = MicroAgentProcessor(context_store, llm_client=llm_client_factory(default=""))
        queue = JobQueue("micro", processor.process, JobOptions(attempts=1, timeout_seconds=5))
        try:
            output = await queue.add(payload, job_id=payload.agent_id).finished()
        finally:
            await queue.close()

        assert output.gap_source == "rule_based"
        assert len(output.research_gaps) >= 1
        with get_session() as session:
            agent = get_agent(session, payload.agent_id)
            assert agent.status == AgentStatus.COMPLETED
            assert agent.processing_time_ms is not None
            assert [l.message for l in list_logs(session, run_id, agent_id=payload.agent_id)][-1].startswith(
                "micro agent completed"
            )

    async def test_storage_failure_marks_agent_failed_on_last_attempt(self, context_store, sample_papers, run_id):
        paper = sample_papers[0]
        payload = payload_for(paper)
        with get_session() as session:
            create_agent(session, payload.agent_id, run_id, 1, AgentType.MICRO)

        context_store.max_context_bytes = 10
        processor = MicroAgentProcessor(context_store)
        queue = JobQueue("micro", processor.process, JobOptions(attempts=2, backoff_seconds=0.01, timeout_seconds=5))
        try:
            with pytest.raises(Exception, match="limit"):
                await queue.add(payload, job_id=payload.agent_id).finished()
        finally:
            await queue.close()

        with get_session() as session:
            agent = get_agent(session, payload.agent_id)
            assert agent.status == AgentStatus.FAILED
            assert "limit" in agent.error_message
            assert agent.agent_metadata["attempt"] == 2
