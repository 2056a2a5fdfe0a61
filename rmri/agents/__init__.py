"""
Agent processors for the three RMRI tiers.

- MicroAgentProcessor: per-paper extraction
- MesoAgentProcessor: thematic clustering of an iteration's micro outputs
- MetaAgentProcessor: cross-cluster ranking and convergence testing
"""

from rmri.agents.base import BaseAgentProcessor
from rmri.agents.clustering import ClusterStrategy, HashBucketClusterStrategy
from rmri.agents.embeddings import Embedder, NullEmbedder
from rmri.agents.meso import MesoAgentProcessor
from rmri.agents.meta import MetaAgentProcessor
from rmri.agents.micro import MicroAgentProcessor

__all__ = [
    "BaseAgentProcessor",
    "ClusterStrategy",
    "HashBucketClusterStrategy",
    "Embedder",
    "NullEmbedder",
    "MesoAgentProcessor",
    "MetaAgentProcessor",
    "MicroAgentProcessor",
]
