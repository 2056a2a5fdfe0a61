"""
Tests for clustering strategies and placeholder embeddings.
"""

import pytest

from rmri.agents.clustering import HashBucketClusterStrategy, determine_cluster_count
from rmri.agents.embeddings import NullEmbedder
from rmri.models.micro import (
    EmbeddingBundle,
    EmbeddingVector,
    MethodologySummary,
    MicroOutput,
    Reproducibility,
)


def make_output(i: int) -> MicroOutput:
    vector = EmbeddingVector(dimension=768)
    return MicroOutput(
        paper_id=f"p{i}",
        title=f"Paper number {i}",
        methodology=MethodologySummary(reproducibility=Reproducibility(score=0.0, level="low")),
        embeddings=EmbeddingBundle(title=vector, abstract=vector, combined=vector),
        confidence=0.5,
        iteration=1,
        agent_id=f"a{i}",
    )


class TestDetermineClusterCount:

    @pytest.mark.parametrize("n,expected", [
        (1, 2), (5, 2), (6, 3), (10, 3), (11, 4), (20, 4), (21, 6), (50, 6), (64, 8), (200, 10),
    ])
    def test_heuristic(self, n, expected):
        assert determine_cluster_count(n) == expected


class TestHashBucketClusterStrategy:

    def test_every_item_assigned_once(self):
        items = [make_output(i) for i in range(25)]
        clusters = HashBucketClusterStrategy().cluster(items)

        members = [m.paper_id for c in clusters for m in c.members]
        assert sorted(members) == sorted(i.paper_id for i in items)
        assert all(c.size > 0 for c in clusters)
        assert len(clusters) <= determine_cluster_count(25)

    def test_ids_are_contiguous(self):
        clusters = HashBucketClusterStrategy(n_clusters=7).cluster([make_output(i) for i in range(4)])
        assert [c.cluster_id for c in clusters] == list(range(len(clusters)))

    def test_deterministic(self):
        items = [make_output(i) for i in range(12)]
        first = HashBucketClusterStrategy().cluster(items)
        second = HashBucketClusterStrategy().cluster(list(items))

        assert [[m.paper_id for m in c.members] for c in first] == [[m.paper_id for m in c.members] for c in second]

    def test_single_cluster(self):
        clusters = HashBucketClusterStrategy(n_clusters=1).cluster([make_output(i) for i in range(3)])

        assert len(clusters) == 1
        assert clusters[0].size == 3

    def test_empty_input(self):
        assert HashBucketClusterStrategy().cluster([]) == []

    def test_invalid_cluster_count(self):
        with pytest.raises(ValueError):
            HashBucketClusterStrategy(n_clusters=0)


class TestNullEmbedder:

    def test_distinct_long_tokens(self):
        vector = NullEmbedder().embed("The graph graph model is a GRAPH model")

        assert vector.vector == ["graph", "model"]
        assert vector.dimension == 768
        assert vector.text_length == len("The graph graph model is a GRAPH model")

    def test_token_cap(self):
        text = " ".join(f"word{i}" for i in range(100))
        assert len(NullEmbedder(max_tokens=10).embed(text).vector) == 10

    def test_empty(self):
        assert NullEmbedder().embed("").vector == []
