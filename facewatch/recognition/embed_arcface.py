"""ArcFace embedding utilities."""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from facewatch.errors import EmbeddingError
from facewatch.types import l2_normalize

LOGGER = logging.getLogger("facewatch.recognition.embed")

ARCFACE_INPUT_SIZE = (112, 112)


def default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers based on platform."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


def configure_runtime_threads(threads: int = 2) -> None:
    """Limit thread usage for embedded runtimes."""
    os.environ.setdefault("OMP_NUM_THREADS", str(threads))
    os.environ.setdefault("MKL_NUM_THREADS", str(threads))
    os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", str(threads))


def prepare_face_crop(crop: np.ndarray, size: Tuple[int, int] = ARCFACE_INPUT_SIZE) -> np.ndarray:
    """Validate a BGR face crop and resize it to the model input size.

    Raises ``ValueError`` for crops that are empty or not HxWx3.
    """
    if crop is None:
        raise ValueError("Face crop is None")
    crop = np.asarray(crop)
    if crop.ndim != 3 or crop.shape[2] != 3:
        raise ValueError(f"Face crop must be HxWx3, got shape {crop.shape}")
    if crop.shape[0] == 0 or crop.shape[1] == 0:
        raise ValueError(f"Face crop is empty: shape {crop.shape}")
    if crop.dtype != np.uint8:
        crop = np.clip(crop, 0, 255).astype(np.uint8)
    if (crop.shape[1], crop.shape[0]) == tuple(size):
        return crop
    return cv2.resize(crop, size, interpolation=cv2.INTER_LINEAR)


class ArcFaceEmbedder:
    """Loads an ArcFace ONNX model via InsightFace for embedding extraction."""

    def __init__(self, model_path: Optional[str] = None, providers: Optional[Sequence[str]] = None) -> None:
        configure_runtime_threads()
        try:
            from insightface.model_zoo import get_model
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(
                "insightface is required for ArcFaceEmbedder. "
                "Install it via `pip install insightface`."
            ) from exc

        if model_path:
            resolved = str(Path(model_path).expanduser())
        else:
            resolved = "arcface_r100_v1"
        provider_list: Tuple[str, ...]
        if providers is None:
            provider_list = default_providers()
        else:
            provider_list = tuple(providers)
        LOGGER.info("Loading ArcFace model %s providers=%s", resolved, provider_list)
        model = get_model(resolved, download=True, providers=list(provider_list))
        if model is None:
            LOGGER.info("Falling back to FaceAnalysis recognition model")
            from insightface.app import FaceAnalysis

            analysis = FaceAnalysis(name="buffalo_l", providers=list(provider_list))
            analysis.prepare(ctx_id=0)
            model = analysis.models.get("recognition")
            if model is None:
                raise RuntimeError("Unable to load ArcFace recognition model via insightface FaceAnalysis")
        if hasattr(model, "prepare"):
            model.prepare(ctx_id=0)
        self.model = model
        self.providers = provider_list

    @property
    def embedding_dim(self) -> Optional[int]:
        output_shape = getattr(self.model, "output_shape", None)
        if output_shape is None:
            return None
        return int(output_shape[-1])

    def embed(self, face_crop: np.ndarray) -> np.ndarray:
        """Compute an L2-normalized float32 embedding for a BGR face crop.

        Raises :class:`EmbeddingError` on malformed crops or model failure.
        """
        try:
            aligned = prepare_face_crop(face_crop)
        except ValueError as exc:
            raise EmbeddingError(str(exc)) from exc
        try:
            feat = self.model.get_feat(aligned)
        except Exception as exc:
            raise EmbeddingError(f"ArcFace inference failed: {exc}") from exc
        embedding = np.asarray(feat, dtype=np.float32).reshape(-1)
        if embedding.size == 0 or not np.all(np.isfinite(embedding)):
            raise EmbeddingError("ArcFace returned an empty or non-finite embedding")
        return l2_normalize(embedding)
