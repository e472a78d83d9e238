"""Distance and similarity functions between face embeddings.

Two metrics are supported:

* ``l2``: Euclidean distance, lower is more similar.
* ``cosine``: cosine similarity, higher is more similar.

Cosine similarity is undefined for a zero-magnitude vector; rather than
returning NaN the functions raise :class:`ZeroMagnitudeError`. All functions
are pure and safe to call from several threads on independent inputs.
"""

from __future__ import annotations

from enum import Enum

import numpy as np

from facewatch.errors import DimensionMismatchError, ZeroMagnitudeError

_ZERO_EPS = 1e-12


class Metric(str, Enum):
    L2 = "l2"
    COSINE = "cosine"

    @classmethod
    def parse(cls, value) -> "Metric":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(
                f"Unknown metric {value!r}; expected one of {[m.value for m in cls]}"
            ) from exc


def _as_vector(vec) -> np.ndarray:
    arr = np.asarray(vec, dtype=np.float32)
    if arr.ndim != 1:
        raise DimensionMismatchError(f"Embedding must be 1-D, got shape {arr.shape}")
    return arr


def _check_same_length(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape != b.shape:
        raise DimensionMismatchError(
            f"Embedding shapes do not match: {a.shape} vs {b.shape}"
        )


def l2_distance(a, b) -> float:
    """Euclidean distance ``sqrt(sum((a_i - b_i)^2))``."""
    a = _as_vector(a)
    b = _as_vector(b)
    _check_same_length(a, b)
    return float(np.linalg.norm(a - b))


def cosine_similarity(a, b) -> float:
    """Cosine of the angle between ``a`` and ``b``, in ``[-1, 1]``.

    Raises :class:`ZeroMagnitudeError` if either vector has zero magnitude.
    """
    a = _as_vector(a)
    b = _as_vector(b)
    _check_same_length(a, b)
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a < _ZERO_EPS or norm_b < _ZERO_EPS:
        raise ZeroMagnitudeError("Cosine similarity undefined for zero-magnitude vector")
    sim = float(np.dot(a, b)) / (norm_a * norm_b)
    # float32 rounding can push |sim| a hair past 1
    return float(np.clip(sim, -1.0, 1.0))


def _as_cluster(query: np.ndarray, cluster) -> np.ndarray:
    stack = np.asarray(cluster, dtype=np.float32)
    if stack.ndim == 1:
        stack = stack.reshape(1, -1)
    if stack.shape[0] == 0:
        raise ValueError("Cannot score an empty cluster")
    if stack.shape[1] != query.shape[0]:
        raise DimensionMismatchError(
            f"Query has {query.shape[0]} dims but cluster has {stack.shape[1]}"
        )
    return stack


def mean_l2_distance(query, cluster) -> float:
    """Average L2 distance from ``query`` to each embedding in ``cluster``."""
    query = _as_vector(query)
    stack = _as_cluster(query, cluster)
    distances = np.linalg.norm(stack - query[None, :], axis=1)
    return float(distances.mean())


def mean_cosine_similarity(query, cluster) -> float:
    """Average cosine similarity between ``query`` and each member of ``cluster``."""
    query = _as_vector(query)
    stack = _as_cluster(query, cluster)
    query_norm = float(np.linalg.norm(query))
    member_norms = np.linalg.norm(stack, axis=1)
    if query_norm < _ZERO_EPS or bool((member_norms < _ZERO_EPS).any()):
        raise ZeroMagnitudeError("Cosine similarity undefined for zero-magnitude vector")
    sims = (stack @ query) / (member_norms * query_norm)
    return float(np.clip(sims, -1.0, 1.0).mean())


def cluster_score(query, cluster, metric: Metric) -> float:
    """Mean-of-pairwise score of ``query`` against one identity cluster."""
    if metric is Metric.L2:
        return mean_l2_distance(query, cluster)
    return mean_cosine_similarity(query, cluster)


def is_better(candidate: float, incumbent: float, metric: Metric) -> bool:
    """Strict comparison, so an equal score never displaces an earlier cluster."""
    if metric is Metric.L2:
        return candidate < incumbent
    return candidate > incumbent
