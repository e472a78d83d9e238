"""Enroll reference faces into a gallery from a folder of labelled images."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import cv2
import numpy as np

from facewatch.detectors.face_retina import RetinaFaceDetector
from facewatch.errors import EmbeddingError
from facewatch.io_utils import list_images
from facewatch.recognition.embed_arcface import ArcFaceEmbedder
from facewatch.recognition.gallery import GalleryIndex
from facewatch.types import bbox_area, crop_region

LOGGER = logging.getLogger("facewatch.recognition.enroll")


def iter_gallery_images(gallery_dir: Path) -> Iterable[Tuple[str, Path]]:
    """Yield ``(identity, image_path)``; each sub-directory name is an identity."""
    for label_dir in sorted(p for p in gallery_dir.iterdir() if p.is_dir()):
        for img_path in list_images(label_dir):
            yield label_dir.name, img_path


def _load_image(path: Path) -> np.ndarray:
    image = cv2.imread(str(path))
    if image is None:
        raise FileNotFoundError(f"Unable to read image: {path}")
    return image


def _face_crop(image: np.ndarray, detector: Optional[RetinaFaceDetector]) -> Optional[np.ndarray]:
    if detector is None:
        return image
    regions = detector.detect(image)
    if not regions:
        return None
    best = max(regions, key=lambda r: (r.score, bbox_area(r.bbox)))
    return crop_region(image, best.bbox)


def enroll_directory(
    gallery: GalleryIndex,
    gallery_dir: Path,
    embedder: ArcFaceEmbedder,
    detector: Optional[RetinaFaceDetector] = None,
) -> Dict[str, int]:
    """Embed every reference image under ``gallery_dir`` and add it to ``gallery``.

    With a detector, the highest-scoring face in each image is used; without
    one, the image is assumed to be a face crop already. Unreadable images,
    images without a face and failed embeddings are skipped with a warning.

    Returns the number of shots enrolled per identity.
    """
    gallery_dir = Path(gallery_dir)
    if not gallery_dir.is_dir():
        raise FileNotFoundError(f"Gallery directory not found: {gallery_dir}")

    counts: Dict[str, int] = {}
    skipped = 0
    for identity, img_path in iter_gallery_images(gallery_dir):
        try:
            image = _load_image(img_path)
            crop = _face_crop(image, detector)
            if crop is None:
                LOGGER.warning("No face found in %s; skipping", img_path)
                skipped += 1
                continue
            embedding = embedder.embed(crop)
            gallery.add(identity, embedding)
        except (FileNotFoundError, EmbeddingError, ValueError) as exc:
            LOGGER.warning("Skipping %s: %s", img_path, exc)
            skipped += 1
            continue
        counts[identity] = counts.get(identity, 0) + 1

    if not counts:
        raise RuntimeError(f"No gallery images could be enrolled from {gallery_dir}")

    LOGGER.info(
        "Gallery enrolled: %d identities, %d shots (%d skipped) -> %s",
        len(counts),
        sum(counts.values()),
        skipped,
        sorted(counts),
    )
    return counts
