"""In-memory gallery of enrolled face embeddings.

The gallery stores ``(identity, embedding)`` pairs; several pairs may share
an identity (multiple reference shots of one person). Matching groups the
entries by identity and scores a query against each group with the
mean-of-pairwise policy:

* ``l2``: mean distance from the query to every shot, lowest wins.
* ``cosine``: mean similarity to every shot, highest wins.

When two identities score exactly the same, the one enrolled first wins.

One re-entrant lock covers enrollment, edits and reads. Classification takes
an immutable :class:`GallerySnapshot` once per frame, so an enrollment that
lands mid-frame is only seen by the next frame.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from facewatch.errors import DimensionMismatchError, GalleryEmptyError
from facewatch.recognition.metrics import Metric, cluster_score, is_better

LOGGER = logging.getLogger("facewatch.recognition.gallery")


@dataclass(frozen=True)
class GalleryEntry:
    identity: str
    embedding: np.ndarray


class GallerySnapshot:
    """Read-only view of the gallery clusters at one point in time."""

    def __init__(self, clusters: Dict[str, np.ndarray]) -> None:
        # identity -> (N, D) stack, ordered by first enrollment
        self._clusters = clusters

    def __len__(self) -> int:
        return sum(stack.shape[0] for stack in self._clusters.values())

    @property
    def identities(self) -> List[str]:
        return list(self._clusters.keys())

    def clusters(self) -> Dict[str, np.ndarray]:
        return dict(self._clusters)

    def scores(self, query: np.ndarray, metric: Metric) -> List[Tuple[str, float]]:
        """Score ``query`` against every identity cluster, in iteration order."""
        return [
            (identity, cluster_score(query, stack, metric))
            for identity, stack in self._clusters.items()
        ]

    def best_match(self, query: np.ndarray, metric: Metric) -> Tuple[str, float]:
        if not self._clusters:
            raise GalleryEmptyError("Cannot match against an empty gallery")
        metric = Metric.parse(metric)
        scores = self.scores(query, metric)
        best = scores[0]
        for identity, score in scores[1:]:
            if is_better(score, best[1], metric):
                best = (identity, score)
        return best


class GalleryIndex:
    """Thread-safe store of enrolled identities and their embeddings."""

    def __init__(self) -> None:
        self._entries: List[GalleryEntry] = []
        self._dim: Optional[int] = None
        self._lock = threading.RLock()

    def __len__(self) -> int:
        # Unlocked read: callers only use it as a best-effort emptiness check.
        return len(self._entries)

    @property
    def dimension(self) -> Optional[int]:
        return self._dim

    def add(self, identity: str, embedding) -> GalleryEntry:
        """Enroll one reference embedding for ``identity``."""
        identity = (identity or "").strip()
        if not identity:
            raise ValueError("Identity label must not be empty")
        vector = np.array(embedding, dtype=np.float32, copy=True)
        if vector.ndim != 1:
            raise ValueError(f"Embedding must be 1-D, got shape {vector.shape}")
        if vector.size == 0:
            raise ValueError("Embedding must not be empty")
        if not np.all(np.isfinite(vector)):
            raise ValueError(f"Embedding for {identity!r} contains non-finite values")
        if float(np.linalg.norm(vector)) == 0.0:
            raise ValueError(f"Embedding for {identity!r} has zero magnitude")
        vector.setflags(write=False)

        with self._lock:
            if self._dim is None:
                self._dim = int(vector.shape[0])
            elif vector.shape[0] != self._dim:
                raise DimensionMismatchError(
                    f"Gallery holds {self._dim}-d embeddings; got {vector.shape[0]} for {identity!r}"
                )
            entry = GalleryEntry(identity=identity, embedding=vector)
            self._entries.append(entry)
            count = len(self._entries)
        LOGGER.debug("Enrolled %s (gallery size=%d)", identity, count)
        return entry

    def remove(self, identity: str) -> int:
        """Drop every entry for ``identity``; returns the number removed."""
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.identity != identity]
            removed = before - len(self._entries)
            if not self._entries:
                self._dim = None
        if removed:
            LOGGER.info("Removed %d gallery entries for %s", removed, identity)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._dim = None

    def identities(self) -> List[str]:
        return list(self.clusters_by_identity().keys())

    def clusters_by_identity(self) -> Dict[str, List[np.ndarray]]:
        """Group embeddings by identity, preserving insertion order in each group."""
        clusters: Dict[str, List[np.ndarray]] = {}
        with self._lock:
            for entry in self._entries:
                clusters.setdefault(entry.identity, []).append(entry.embedding)
        return clusters

    def snapshot(self) -> GallerySnapshot:
        """Capture an immutable, consistent view for one frame's scoring."""
        stacks: Dict[str, np.ndarray] = {}
        for identity, embeds in self.clusters_by_identity().items():
            stack = np.stack(embeds, axis=0)
            stack.setflags(write=False)
            stacks[identity] = stack
        return GallerySnapshot(stacks)

    def best_match(self, query: np.ndarray, metric) -> Tuple[str, float]:
        """Return ``(identity, score)`` of the best-scoring cluster.

        Raises :class:`GalleryEmptyError` when nothing is enrolled.
        """
        return self.snapshot().best_match(query, Metric.parse(metric))
