"""Common dataclasses and type aliases used across the facewatch package."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]
Embedding = np.ndarray

UNKNOWN_LABEL = "Unknown"
COVERING_NOTICE = "Please remove the mask"


class CoveringState(str, Enum):
    """Whether a detected face is obscured by a mask or similar covering."""

    UNCOVERED = "uncovered"
    COVERED = "covered"


@dataclass
class FaceRegion:
    """Face returned by a detector for one frame."""

    bbox: BBox
    score: float = 1.0
    landmarks: Optional[np.ndarray] = None

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]


@dataclass(frozen=True)
class Prediction:
    """Identity decision for one face in one frame."""

    bbox: BBox
    label: str
    covering: CoveringState = CoveringState.UNCOVERED
    score: Optional[float] = None
    # index of the face in the detector output for its frame
    face_idx: int = -1

    def to_dict(self) -> dict:
        return {
            "face_idx": self.face_idx,
            "bbox": list(self.bbox),
            "label": self.label,
            "covering": self.covering.value,
            "score": self.score,
        }


@dataclass(frozen=True)
class FaceResult:
    """Outcome for a single face: a prediction, or the reason it was skipped."""

    face_idx: int
    prediction: Optional[Prediction] = None
    skip_reason: Optional[str] = None

    @classmethod
    def success(cls, face_idx: int, prediction: Prediction) -> "FaceResult":
        return cls(face_idx=face_idx, prediction=prediction)

    @classmethod
    def skipped(cls, face_idx: int, reason: str) -> "FaceResult":
        return cls(face_idx=face_idx, skip_reason=reason)

    @property
    def ok(self) -> bool:
        return self.prediction is not None


@dataclass
class FrameResult:
    """Predictions published for one admitted frame."""

    frame_idx: int
    predictions: List[Prediction] = field(default_factory=list)
    frame_width: int = 0
    frame_height: int = 0
    elapsed_ms: float = 0.0

    @property
    def labels(self) -> List[str]:
        return [p.label for p in self.predictions]


def l2_normalize(vec: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """L2-normalize the input vector."""
    norm = np.linalg.norm(vec)
    if norm < eps:
        return vec
    return vec / norm


def clamp_bbox(box: BBox, width: int, height: int) -> BBox:
    """Clip a bounding box to the frame boundaries."""
    x1, y1, x2, y2 = box
    return (
        min(max(0.0, float(x1)), float(width)),
        min(max(0.0, float(y1)), float(height)),
        min(max(0.0, float(x2)), float(width)),
        min(max(0.0, float(y2)), float(height)),
    )


def bbox_area(box: BBox) -> float:
    """Compute area of a bounding box."""
    x1, y1, x2, y2 = box
    return max(0.0, (x2 - x1)) * max(0.0, (y2 - y1))


def crop_region(frame: np.ndarray, bbox: BBox) -> np.ndarray:
    """Return the pixels of ``frame`` inside ``bbox`` (clamped to the frame).

    Raises ``ValueError`` when the clamped box is empty, so callers can treat a
    degenerate detection as a malformed crop.
    """
    if frame.ndim < 2:
        raise ValueError(f"Frame must be at least 2-D, got shape {frame.shape}")
    height, width = frame.shape[:2]
    x1, y1, x2, y2 = [int(round(v)) for v in clamp_bbox(bbox, width, height)]
    if x2 <= x1 or y2 <= y1:
        raise ValueError(f"Empty crop for bbox {bbox} in frame {width}x{height}")
    return frame[y1:y2, x1:x2]
