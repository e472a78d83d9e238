"""Per-face classification: embed, covering check, cluster scoring, decision."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

import numpy as np

from facewatch.config import MatchConfig
from facewatch.errors import (
    ClassificationError,
    DimensionMismatchError,
    EmbeddingError,
    GalleryEmptyError,
    ZeroMagnitudeError,
)
from facewatch.recognition.covering import OnnxCoveringClassifier
from facewatch.recognition.embed_arcface import ArcFaceEmbedder
from facewatch.recognition.gallery import GalleryIndex, GallerySnapshot
from facewatch.recognition.metrics import Metric
from facewatch.types import (
    UNKNOWN_LABEL,
    CoveringState,
    FaceRegion,
    FaceResult,
    Prediction,
    crop_region,
)

LOGGER = logging.getLogger("facewatch.stream.pipeline")


def decide_cosine(identity: str, score: float, threshold: float, unknown_label: str = UNKNOWN_LABEL) -> str:
    """Accept ``identity`` only if its mean similarity is above ``threshold``."""
    if score > threshold:
        return identity
    return unknown_label


def decide_l2(identity: str, score: float, threshold: float, unknown_label: str = UNKNOWN_LABEL) -> str:
    """Reject as unknown when the mean distance is above ``threshold``."""
    if score > threshold:
        return unknown_label
    return identity


class _FrameSnapshot:
    """Gallery snapshot taken on first use and shared by every face of a frame."""

    def __init__(self, gallery: GalleryIndex) -> None:
        self._gallery = gallery
        self._snapshot: Optional[GallerySnapshot] = None
        self._lock = threading.Lock()

    def get(self) -> GallerySnapshot:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self._gallery.snapshot()
            return self._snapshot


class MatchPipeline:
    """Turns one frame's face regions into an ordered list of predictions.

    Each face is handled on its own: a failure while embedding, classifying
    the covering or scoring one face yields a skipped :class:`FaceResult` and
    never affects its siblings. With ``max_face_workers > 1`` faces run on a
    thread pool and results are returned in input order.
    """

    def __init__(
        self,
        gallery: GalleryIndex,
        embedder: ArcFaceEmbedder,
        covering_classifier: Optional[OnnxCoveringClassifier] = None,
        config: Optional[MatchConfig] = None,
    ) -> None:
        self.gallery = gallery
        self.embedder = embedder
        self.covering_classifier = covering_classifier
        self.config = config or MatchConfig()
        if self.config.covering_check_enabled and covering_classifier is None:
            raise ValueError("covering_check_enabled requires a covering classifier")
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.config.max_face_workers > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_face_workers,
                thread_name_prefix="facewatch-face",
            )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def run(self, frame: np.ndarray, regions: Sequence[FaceRegion], frame_idx: int = -1) -> List[Prediction]:
        """Predictions for the faces that were classified, in region order."""
        return [r.prediction for r in self.classify_faces(frame, regions, frame_idx) if r.prediction is not None]

    def classify_faces(
        self,
        frame: np.ndarray,
        regions: Sequence[FaceRegion],
        frame_idx: int = -1,
    ) -> List[FaceResult]:
        snapshot = _FrameSnapshot(self.gallery)
        jobs = list(enumerate(regions))
        if self._executor is not None and len(jobs) > 1:
            results = list(
                self._executor.map(
                    lambda job: self._classify_face(frame, job[0], job[1], frame_idx, snapshot),
                    jobs,
                )
            )
        else:
            results = [self._classify_face(frame, idx, region, frame_idx, snapshot) for idx, region in jobs]

        skipped = sum(1 for r in results if not r.ok)
        if skipped:
            LOGGER.info("Frame %d: %d/%d faces skipped", frame_idx, skipped, len(results))
        return results

    def _classify_face(
        self,
        frame: np.ndarray,
        face_idx: int,
        region: FaceRegion,
        frame_idx: int,
        snapshot: _FrameSnapshot,
    ) -> FaceResult:
        try:
            return FaceResult.success(face_idx, self._predict(frame, face_idx, region, snapshot))
        except EmbeddingError as exc:
            reason = f"embedding failed: {exc}"
        except ClassificationError as exc:
            reason = f"covering classification failed: {exc}"
        except (DimensionMismatchError, ZeroMagnitudeError) as exc:
            reason = f"scoring failed: {exc}"
        except GalleryEmptyError:
            reason = "gallery emptied before scoring"
        except ValueError as exc:
            reason = f"malformed crop: {exc}"
        except Exception as exc:  # per-face boundary
            LOGGER.exception("Frame %d face %d: unexpected failure", frame_idx, face_idx)
            reason = f"unexpected {type(exc).__name__}: {exc}"
        LOGGER.warning(
            "Frame %d face %d bbox=%s skipped (%s)",
            frame_idx,
            face_idx,
            tuple(round(v, 1) for v in region.bbox),
            reason,
        )
        return FaceResult.skipped(face_idx, reason)

    def _predict(
        self,
        frame: np.ndarray,
        face_idx: int,
        region: FaceRegion,
        snapshot: _FrameSnapshot,
    ) -> Prediction:
        crop = crop_region(frame, region.bbox)
        embedding = self.embedder.embed(crop)

        covering = CoveringState.UNCOVERED
        if self.config.covering_check_enabled:
            covering = CoveringState(self.covering_classifier.classify(crop))

        if covering is CoveringState.COVERED:
            return Prediction(region.bbox, self.config.covering_notice, CoveringState.COVERED, face_idx=face_idx)

        identity, score = snapshot.get().best_match(embedding, self.config.metric)
        label = self._decide(identity, score)
        LOGGER.debug("Person identified as %s (best=%s %s=%.4f)", label, identity, self.config.metric.value, score)
        return Prediction(region.bbox, label, CoveringState.UNCOVERED, score, face_idx)

    def _decide(self, identity: str, score: float) -> str:
        if self.config.metric is Metric.COSINE:
            return decide_cosine(identity, score, self.config.cosine_threshold, self.config.unknown_label)
        return decide_l2(identity, score, self.config.l2_threshold, self.config.unknown_label)
