"""Face covering (mask) classification with an ONNX model."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from facewatch.errors import ClassificationError
from facewatch.recognition.embed_arcface import configure_runtime_threads, default_providers
from facewatch.types import CoveringState

LOGGER = logging.getLogger("facewatch.recognition.covering")


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


class OnnxCoveringClassifier:
    """Two-class mask classifier served through onnxruntime.

    The model takes one RGB face crop and outputs two scores; ``covered_index``
    names the output that means "wearing a covering". Channel layout (NCHW or
    NHWC) is read from the model's input shape.
    """

    def __init__(
        self,
        model_path: str,
        providers: Optional[Sequence[str]] = None,
        input_size: Tuple[int, int] = (224, 224),
        covered_index: int = 0,
        covered_threshold: float = 0.5,
    ) -> None:
        configure_runtime_threads()
        try:
            import onnxruntime as ort
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(
                "onnxruntime is required for OnnxCoveringClassifier. "
                "Install it via `pip install onnxruntime`."
            ) from exc

        resolved = Path(model_path).expanduser()
        if not resolved.exists():
            raise FileNotFoundError(f"Covering model not found: {resolved}")
        provider_list = tuple(providers) if providers else default_providers()
        self.session = ort.InferenceSession(str(resolved), providers=list(provider_list))
        model_input = self.session.get_inputs()[0]
        self.input_name = model_input.name
        shape = list(model_input.shape)
        self.channels_first = len(shape) == 4 and shape[1] == 3
        self.input_size = input_size
        self.covered_index = covered_index
        self.covered_threshold = covered_threshold
        LOGGER.info(
            "Loaded covering model %s providers=%s input=%s layout=%s",
            resolved,
            provider_list,
            shape,
            "NCHW" if self.channels_first else "NHWC",
        )

    def _preprocess(self, face_crop: np.ndarray) -> np.ndarray:
        crop = np.asarray(face_crop)
        if crop.ndim != 3 or crop.shape[2] != 3 or crop.shape[0] == 0 or crop.shape[1] == 0:
            raise ClassificationError(f"Face crop must be a non-empty HxWx3 image, got {crop.shape}")
        rgb = cv2.cvtColor(crop.astype(np.uint8), cv2.COLOR_BGR2RGB)
        resized = cv2.resize(rgb, self.input_size, interpolation=cv2.INTER_LINEAR)
        tensor = resized.astype(np.float32) / 255.0
        if self.channels_first:
            tensor = np.transpose(tensor, (2, 0, 1))
        return tensor[None, ...]

    def covered_probability(self, face_crop: np.ndarray) -> float:
        tensor = self._preprocess(face_crop)
        try:
            outputs = self.session.run(None, {self.input_name: tensor})
        except Exception as exc:
            raise ClassificationError(f"Covering inference failed: {exc}") from exc
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size < 2 or self.covered_index >= scores.size:
            raise ClassificationError(f"Unexpected covering model output shape {np.shape(outputs[0])}")
        # Accept either logits or probabilities.
        if scores.min() < 0.0 or not np.isclose(scores.sum(), 1.0, atol=1e-3):
            scores = softmax(scores)
        return float(scores[self.covered_index])

    def classify(self, face_crop: np.ndarray) -> CoveringState:
        if self.covered_probability(face_crop) >= self.covered_threshold:
            return CoveringState.COVERED
        return CoveringState.UNCOVERED
