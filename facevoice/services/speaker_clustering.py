"""
Online Speaker Clustering - persistent voice identities from diarized segments.

Each identity is a running centroid (count, sum) so memory per speaker is
constant no matter how many segments it absorbs. A new embedding joins the
closest cluster when the distance is below the threshold, otherwise it seeds
a new cluster with a fresh id.

Merging is count-weighted sum composition, so it is commutative and
associative and clusters can be consolidated in batches later.
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Iterable, Literal, Optional, Union

import numpy as np

from facevoice.config import ClusteringConfig
from facevoice.services.errors import DimensionMismatchError

logger = logging.getLogger(__name__)

Metric = Literal["cosine", "normalized_l2", "l2"]


def _as_vector(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float32).reshape(-1)


def _check_dimensions(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])


class SpeakerCluster:
    """Incrementally averaged voice embedding for one speaker."""

    def __init__(self, dimension: int, cluster_id: Optional[str] = None):
        if dimension <= 0:
            raise ValueError(f"Cluster dimension must be positive, got {dimension}")
        self.cluster_id = cluster_id
        self.count = 0
        self.sum = np.zeros(dimension, dtype=np.float32)
        self.centroid = np.zeros(dimension, dtype=np.float32)

    @classmethod
    def from_embedding(cls, embedding, cluster_id: Optional[str] = None) -> "SpeakerCluster":
        vector = _as_vector(embedding)
        cluster = cls(vector.shape[0], cluster_id)
        cluster += vector
        return cluster

    def __repr__(self) -> str:
        return f"SpeakerCluster(id={self.cluster_id!r}, count={self.count}, dim={self.dimension})"

    @property
    def dimension(self) -> int:
        return self.sum.shape[0]

    def __iadd__(self, other: Union["SpeakerCluster", np.ndarray]) -> "SpeakerCluster":
        if isinstance(other, SpeakerCluster):
            _check_dimensions(self.sum, other.sum)
            if self.cluster_id is None:
                self.cluster_id = other.cluster_id
            self.count += other.count
            self.sum = self.sum + other.sum
        else:
            vector = _as_vector(other)
            _check_dimensions(self.sum, vector)
            self.count += 1
            self.sum = self.sum + vector

        if self.count > 0:
            self.centroid = self.sum / np.float32(self.count)
        return self

    def __add__(self, other: Union["SpeakerCluster", np.ndarray]) -> "SpeakerCluster":
        merged = self.copy()
        merged += other
        return merged

    def copy(self) -> "SpeakerCluster":
        clone = SpeakerCluster(self.dimension, self.cluster_id)
        clone.count = self.count
        clone.sum = self.sum.copy()
        clone.centroid = self.centroid.copy()
        return clone

    def distance(self, other: Union["SpeakerCluster", np.ndarray], metric: Metric = "cosine") -> float:
        target = other.centroid if isinstance(other, SpeakerCluster) else _as_vector(other)
        if metric == "cosine":
            return cosine_distance(self.centroid, target)
        if metric == "normalized_l2":
            return normalized_l2_distance(self.centroid, target)
        if metric == "l2":
            return l2_distance(self.centroid, target)
        raise ValueError(f"Unknown distance metric: {metric}")


def cosine_distance(a, b) -> float:
    """1 - cosine similarity; 2.0 when either vector has zero length."""
    a, b = _as_vector(a), _as_vector(b)
    _check_dimensions(a, b)
    denominator = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denominator == 0:
        return 2.0
    return 1.0 - float(np.dot(a, b)) / denominator


def normalized_l2_distance(a, b) -> float:
    """Euclidean distance between the unit-normalized vectors."""
    a, b = _as_vector(a), _as_vector(b)
    _check_dimensions(a, b)
    norm_a, norm_b = float(np.linalg.norm(a)), float(np.linalg.norm(b))
    if norm_a == 0 or norm_b == 0:
        return 2.0
    return float(np.linalg.norm(a / np.float32(norm_a) - b / np.float32(norm_b)))


def l2_distance(a, b) -> float:
    a, b = _as_vector(a), _as_vector(b)
    _check_dimensions(a, b)
    return float(np.linalg.norm(a - b))


def closest(
    embedding,
    clusters: Iterable[SpeakerCluster],
    metric: Metric = "cosine",
) -> tuple[Optional[SpeakerCluster], float]:
    """Cluster nearest to an embedding and its distance; (None, inf) if there are none."""
    vector = _as_vector(embedding)
    best: Optional[SpeakerCluster] = None
    best_distance = math.inf
    for cluster in clusters:
        distance = cluster.distance(vector, metric)
        if distance < best_distance:
            best, best_distance = cluster, distance
    return best, best_distance


@dataclass
class ClusterAssignment:
    """Where one voice embedding ended up."""

    cluster_id: str
    distance: float
    created: bool


class OnlineSpeakerClustering:
    """
    Owner of the speaker clusters.

    Written only from the diarization path; the lock guards readers such as
    the HTTP layer, and is independent of any tracking state.
    """

    def __init__(self, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig()
        self._clusters: list[SpeakerCluster] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._clusters)

    @property
    def clusters(self) -> list[SpeakerCluster]:
        with self._lock:
            return [c.copy() for c in self._clusters]

    def get(self, cluster_id: str) -> Optional[SpeakerCluster]:
        with self._lock:
            for cluster in self._clusters:
                if cluster.cluster_id == cluster_id:
                    return cluster.copy()
        return None

    def assign(self, embedding) -> ClusterAssignment:
        """Merge an embedding into its closest cluster, or start a new one."""
        vector = _as_vector(embedding)
        with self._lock:
            cluster, distance = closest(vector, self._clusters, self.config.metric)
            if cluster is not None and distance < self.config.threshold:
                cluster += vector
                return ClusterAssignment(cluster_id=cluster.cluster_id, distance=distance, created=False)

            cluster_id = self._allocate_id()
            self._clusters.append(SpeakerCluster.from_embedding(vector, cluster_id))
            logger.info(f"New speaker cluster {cluster_id} (closest distance {distance:.3f})")
            return ClusterAssignment(cluster_id=cluster_id, distance=distance, created=True)

    def consolidate(self, threshold: Optional[float] = None) -> dict[str, str]:
        """
        Merge clusters whose centroids drifted within `threshold` of each other.

        The older cluster absorbs the newer one and keeps its id.

        Returns:
            Mapping of absorbed cluster id -> surviving cluster id
        """
        limit = self.config.consolidation_threshold if threshold is None else threshold
        merged: dict[str, str] = {}

        with self._lock:
            i = 0
            while i < len(self._clusters):
                survivor = self._clusters[i]
                j = i + 1
                while j < len(self._clusters):
                    other = self._clusters[j]
                    if survivor.distance(other, self.config.metric) < limit:
                        survivor += other
                        merged[other.cluster_id] = survivor.cluster_id
                        del self._clusters[j]
                    else:
                        j += 1
                i += 1

        if merged:
            logger.info(f"Consolidated {len(merged)} speaker clusters: {merged}")
        return merged

    def reset(self) -> None:
        with self._lock:
            self._clusters.clear()
            self._next_id = 1

    def _allocate_id(self) -> str:
        cluster_id = f"{self.config.id_prefix}-{self._next_id}"
        self._next_id += 1
        return cluster_id
