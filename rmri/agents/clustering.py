"""
Clustering strategies for the meso tier.

``HashBucketClusterStrategy`` assigns papers to buckets by a stable hash of
their title and contributions. It groups nothing semantically; it exists so
the synthesis steps can run deterministically until a real
embedding-distance strategy is plugged in through ``ClusterStrategy``.
"""

import hashlib
import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from rmri.models.micro import MicroOutput


@dataclass
class Cluster:
    cluster_id: int
    members: List[MicroOutput] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.members)


def determine_cluster_count(n_items: int) -> int:
    """Target cluster count for ``n_items`` papers."""
    if n_items <= 5:
        return 2
    if n_items <= 10:
        return 3
    if n_items <= 20:
        return 4
    if n_items <= 50:
        return 6
    return min(10, math.ceil(math.sqrt(n_items)))


class ClusterStrategy(ABC):
    """Groups micro outputs into clusters."""

    @abstractmethod
    def cluster(self, items: List[MicroOutput]) -> List[Cluster]:
        """Return non-empty clusters numbered from 0."""


class HashBucketClusterStrategy(ClusterStrategy):
    """
    Deterministic hash-bucket assignment.

    Args:
        n_clusters: Fixed bucket count; defaults to ``determine_cluster_count``
    """

    def __init__(self, n_clusters: Optional[int] = None):
        if n_clusters is not None and n_clusters < 1:
            raise ValueError("n_clusters must be at least 1")
        self.n_clusters = n_clusters

    @staticmethod
    def bucket_key(item: MicroOutput) -> str:
        contributions = [c.model_dump(mode="json") for c in item.contributions]
        return item.title + json.dumps(contributions, sort_keys=True)

    def cluster(self, items: List[MicroOutput]) -> List[Cluster]:
        if not items:
            return []

        k = self.n_clusters or determine_cluster_count(len(items))
        buckets: List[List[MicroOutput]] = [[] for _ in range(k)]
        for item in items:
            digest = hashlib.md5(self.bucket_key(item).encode("utf-8")).hexdigest()
            buckets[int(digest, 16) % k].append(item)

        non_empty = [bucket for bucket in buckets if bucket]
        return [Cluster(cluster_id=i, members=bucket) for i, bucket in enumerate(non_empty)]
