"""
Tests for the meta agent: cross-domain synthesis, ranking and convergence.
"""

import pytest

from rmri.agents.clustering import Cluster
from rmri.agents.meso import MesoAgentProcessor, summarize_cluster
from rmri.agents.meta import (
    MetaAgentProcessor,
    collect_gap_candidates,
    generate_research_directions,
    identify_cross_domain_patterns,
    identify_research_frontiers,
    meta_output_key,
)
from rmri.agents.scoring import SOURCE_CLUSTER, SOURCE_THEMATIC, GapScorer, rank_gaps
from rmri.core.errors import NoInputsError
from rmri.models.jobs import MesoJobPayload, MetaJobPayload
from rmri.models.meso import MesoOutput, MesoStatistics, ThematicGap
from rmri.models.meta import MetaOutput
from rmri.models.micro import (
    EmbeddingBundle,
    EmbeddingVector,
    MethodologySummary,
    MicroOutput,
    Reproducibility,
    ResearchGap,
)


def micro(paper_id, title, year=None, gaps=()):
    vector = EmbeddingVector(dimension=768)
    return MicroOutput(
        paper_id=paper_id,
        title=title,
        year=year,
        research_gaps=[
            ResearchGap(description=d, type="inferred", priority=p, confidence=0.6, source="inferred")
            for d, p in gaps
        ],
        methodology=MethodologySummary(reproducibility=Reproducibility(score=0.0, level="low")),
        embeddings=EmbeddingBundle(title=vector, abstract=vector, combined=vector),
        confidence=0.6,
        iteration=1,
        agent_id=f"agent-{paper_id}",
    )


def meso(*member_groups, thematic_gaps=()):
    clusters = [summarize_cluster(Cluster(i, list(members))) for i, members in enumerate(member_groups)]
    return MesoOutput(
        iteration=1,
        agent_id="meso-1",
        total_papers=sum(c.size for c in clusters),
        total_clusters=len(clusters),
        clusters=clusters,
        thematic_gaps=list(thematic_gaps),
        statistics=MesoStatistics(
            avg_cluster_size=1.0, min_cluster_size=1, max_cluster_size=1, total_contributions=0, total_gaps=0,
        ),
        confidence=0.6,
    )


class TestCrossDomainPatterns:

    def test_recurring_theme(self):
        output = meso([micro("a", "Protein folding", year=2020)], [micro("b", "Protein folding", year=2021)])
        patterns = identify_cross_domain_patterns([output])

        recurring = [p for p in patterns if p.type == "recurring_theme"]
        assert len(recurring) == 1
        assert recurring[0].frequency == 2
        assert recurring[0].confidence == pytest.approx(0.7)
        assert recurring[0].description == "Theme appears across 2 clusters"

    def test_temporal_evolution(self):
        output = meso([micro("a", "Old work", year=2005)], [micro("b", "New work", year=2023)])
        patterns = identify_cross_domain_patterns([output])

        assert [p.type for p in patterns] == ["temporal_evolution"]
        assert (patterns[0].year_min, patterns[0].year_max) == (2005, 2023)

    def test_nothing_for_unrelated_recent_clusters(self):
        output = meso([micro("a", "Protein folding", year=2021)], [micro("b", "Quantum sensing", year=2022)])
        assert identify_cross_domain_patterns([output]) == []


class TestGapCandidates:

    def test_cluster_and_thematic_sources(self):
        output = meso(
            [micro("a", "Protein folding", gaps=[("Missing membrane protein benchmarks", "high")])],
            thematic_gaps=[ThematicGap(
                theme="protein ∩ enzyme", description="Under-explored intersection between protein and enzyme",
                priority="medium", confidence=0.6,
            )],
        )
        candidates = collect_gap_candidates([output])

        assert [c.source for c in candidates] == [SOURCE_CLUSTER, SOURCE_THEMATIC]
        assert candidates[0].priority == "high"
        assert candidates[0].theme == "protein, folding"
        assert candidates[0].cluster_size == 1
        assert candidates[0].confidence == 1.0

    def test_duplicate_descriptions_collapse(self):
        shared = ("Missing membrane protein benchmarks", "high")
        output = meso(
            [micro("a", "Protein folding", gaps=[shared])],
            [micro("b", "Enzyme design", gaps=[shared])],
        )
        candidates = collect_gap_candidates([output])

        assert len(candidates) == 1
        assert candidates[0].theme == "protein, folding"


class TestFrontiersAndDirections:

    def test_frontiers(self):
        output = meso(
            [micro("a", "Protein folding", year=2021), micro("b", "Protein folding", year=2022)],
            [micro("c", "Protein folding", year=2019)],
        )
        patterns = identify_cross_domain_patterns([output])
        frontiers = identify_research_frontiers([output], patterns)

        synthesis = [f for f in frontiers if f.type == "cross_domain_synthesis"]
        assert synthesis[0].items == [{"theme": "protein, folding", "frequency": 2}]

    def test_directions_from_gaps_then_frontiers(self):
        output = meso(
            [micro("a", "Protein folding", gaps=[(f"Missing benchmark number {i}", "high") for i in range(7)])],
            [micro("b", "Protein folding")],
        )
        patterns = identify_cross_domain_patterns([output])
        ranked = rank_gaps(collect_gap_candidates([output]), GapScorer())
        directions = generate_research_directions(ranked, identify_research_frontiers([output], patterns))

        assert [d.priority for d in directions] == [1, 2, 3, 4, 5, 6]
        assert directions[0].direction == ranked[0].description
        assert directions[0].rationale == f"High-impact gap with score {ranked[0].total_score:.2f}"
        assert directions[-1].direction == "Explore intersections between protein, folding"
        assert directions[-1].theme == "cross-domain"


class TestMetaAgentProcessor:

    async def run_tiers(self, context_store, run_id, papers, populate_micro_outputs, iteration, **meta_kwargs):
        await populate_micro_outputs(run_id, papers, iteration=iteration)
        await MesoAgentProcessor(context_store).run(
            MesoJobPayload(run_id=run_id, agent_id=f"meso-{iteration}", iteration=iteration)
        )
        payload = MetaJobPayload(run_id=run_id, agent_id=f"meta-{iteration}", iteration=iteration, **meta_kwargs)
        return await MetaAgentProcessor(context_store).run(payload)

    async def test_no_meso_outputs(self, context_store, run_id):
        with pytest.raises(NoInputsError):
            await MetaAgentProcessor(context_store).run(
                MetaJobPayload(run_id=run_id, agent_id="meta-1", iteration=1)
            )

    async def test_first_iteration(self, context_store, run_id, sample_papers, populate_micro_outputs):
        output = await self.run_tiers(context_store, run_id, sample_papers, populate_micro_outputs, 1)

        assert output.convergence.converged is False
        assert output.convergence.reason == "First iteration"
        assert output.should_continue is True
        assert 0 < len(output.ranked_gaps) <= 20
        assert [g.rank for g in output.ranked_gaps] == list(range(1, len(output.ranked_gaps) + 1))
        scores = [g.total_score for g in output.ranked_gaps]
        assert scores == sorted(scores, reverse=True)
        assert output.statistics.total_papers == 3

        record = context_store.read(run_id, "meta-1", meta_output_key(1))
        assert MetaOutput.model_validate(record.data).ranked_gaps == output.ranked_gaps

    async def test_identical_iteration_converges(self, context_store, run_id, sample_papers, populate_micro_outputs):
        await self.run_tiers(context_store, run_id, sample_papers, populate_micro_outputs, 1)
        second = await self.run_tiers(context_store, run_id, sample_papers, populate_micro_outputs, 2)

        assert second.convergence.converged is True
        assert second.convergence.similarity == 1.0
        assert second.should_continue is False

    async def test_stops_at_max_iterations(self, context_store, run_id, sample_papers, populate_micro_outputs):
        output = await self.run_tiers(
            context_store, run_id, sample_papers, populate_micro_outputs, 1, max_iterations=1,
        )

        assert output.convergence.converged is False
        assert output.should_continue is False

    async def test_missing_previous_output(self, context_store, run_id, sample_papers, populate_micro_outputs):
        output = await self.run_tiers(context_store, run_id, sample_papers, populate_micro_outputs, 2)

        assert output.convergence.reason == "First iteration"
        assert output.should_continue is True
