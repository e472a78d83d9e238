"""RetinaFace face detection for live frames."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from facewatch.recognition.embed_arcface import configure_runtime_threads, default_providers
from facewatch.types import FaceRegion, clamp_bbox

LOGGER = logging.getLogger("facewatch.detectors.face")


class RetinaFaceDetector:
    """Wrapper around the InsightFace RetinaFace detector."""

    def __init__(
        self,
        providers: Optional[Sequence[str]] = None,
        det_size: Tuple[int, int] = (640, 640),
        det_thresh: float = 0.5,
        min_face_px: int = 0,
    ) -> None:
        configure_runtime_threads()
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(
                "insightface is required for RetinaFaceDetector. "
                "Install it via `pip install insightface`."
            ) from exc

        self.det_size = tuple(det_size)
        self.det_thresh = det_thresh
        self.min_face_px = min_face_px
        provider_list = tuple(providers) if providers else default_providers()
        self.providers = provider_list
        self.app = FaceAnalysis(name="buffalo_l", allowed_modules=["detection"], providers=list(provider_list))
        ctx_id = 0  # auto GPU/CoreML if available
        self.app.prepare(ctx_id=ctx_id, det_size=self.det_size)
        LOGGER.info(
            "Loaded RetinaFace detector det_size=%s det_thresh=%.2f providers=%s",
            self.det_size,
            det_thresh,
            provider_list,
        )

    def detect(self, frame: np.ndarray, frame_idx: int = -1) -> List[FaceRegion]:
        """Run RetinaFace on a BGR frame and return faces in detector order."""
        height, width = frame.shape[:2]
        faces = self.app.get(frame)
        regions: List[FaceRegion] = []
        for face in faces:
            score = float(face.det_score)
            if score < self.det_thresh:
                continue
            bbox = clamp_bbox(tuple(float(v) for v in face.bbox), width, height)
            if min(bbox[2] - bbox[0], bbox[3] - bbox[1]) < max(1, self.min_face_px):
                continue
            landmarks = np.asarray(face.kps, dtype=np.float32) if face.kps is not None else None
            regions.append(FaceRegion(bbox=bbox, score=score, landmarks=landmarks))
        LOGGER.debug("Frame %d: %d faces (%d raw)", frame_idx, len(regions), len(faces))
        return regions
