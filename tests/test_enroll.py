from pathlib import Path

import numpy as np
import pytest

cv2 = pytest.importorskip("cv2")

from facewatch.errors import EmbeddingError
from facewatch.recognition.enroll import enroll_directory, iter_gallery_images
from facewatch.recognition.gallery import GalleryIndex
from facewatch.types import FaceRegion


class _IntensityEmbedder:
    """Embeds a crop as [mean intensity, 1]; a black crop cannot be embedded."""

    def embed(self, crop):
        level = float(crop.mean())
        if level == 0.0:
            raise EmbeddingError("blank crop")
        return np.array([level, 1.0], dtype=np.float32)


def _write_image(path: Path, value: int, size: int = 32) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    assert cv2.imwrite(str(path), np.full((size, size, 3), value, dtype=np.uint8))


def test_iter_gallery_images_uses_folder_names(tmp_path: Path):
    _write_image(tmp_path / "bob" / "1.png", 50)
    _write_image(tmp_path / "alice" / "b.png", 100)
    _write_image(tmp_path / "alice" / "a.jpg", 110)
    (tmp_path / "alice" / "notes.txt").write_text("not an image", encoding="utf-8")

    pairs = [(identity, path.name) for identity, path in iter_gallery_images(tmp_path)]

    assert pairs == [("alice", "a.jpg"), ("alice", "b.png"), ("bob", "1.png")]


def test_enroll_directory_skips_bad_images(tmp_path: Path):
    _write_image(tmp_path / "alice" / "1.png", 100)
    _write_image(tmp_path / "alice" / "2.png", 120)
    _write_image(tmp_path / "bob" / "1.png", 0)  # embedder refuses it
    _write_image(tmp_path / "bob" / "2.png", 200)
    (tmp_path / "bob" / "3.png").write_bytes(b"not a png")

    gallery = GalleryIndex()
    counts = enroll_directory(gallery, tmp_path, _IntensityEmbedder())

    assert counts == {"alice": 2, "bob": 1}
    assert gallery.identities() == ["alice", "bob"]
    assert len(gallery) == 3


def test_enroll_directory_uses_best_detected_face(tmp_path: Path):
    image = np.zeros((40, 80, 3), dtype=np.uint8)
    image[:, :40] = 60
    image[:, 40:] = 180
    path = tmp_path / "carol" / "1.png"
    path.parent.mkdir(parents=True)
    assert cv2.imwrite(str(path), image)

    class _TwoFaceDetector:
        def detect(self, frame, frame_idx=-1):
            return [
                FaceRegion(bbox=(0.0, 0.0, 40.0, 40.0), score=0.6),
                FaceRegion(bbox=(40.0, 0.0, 80.0, 40.0), score=0.9),
            ]

    class _NoFaceDetector:
        def detect(self, frame, frame_idx=-1):
            return []

    gallery = GalleryIndex()
    enroll_directory(gallery, tmp_path, _IntensityEmbedder(), detector=_TwoFaceDetector())
    stored = gallery.clusters_by_identity()["carol"][0]
    assert stored[0] == pytest.approx(180.0)

    with pytest.raises(RuntimeError):
        enroll_directory(GalleryIndex(), tmp_path, _IntensityEmbedder(), detector=_NoFaceDetector())


def test_enroll_directory_missing_dir(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        enroll_directory(GalleryIndex(), tmp_path / "missing", _IntensityEmbedder())


def test_enroll_directory_skips_embeddings_the_gallery_rejects(tmp_path: Path):
    _write_image(tmp_path / "alice" / "1.png", 100)
    _write_image(tmp_path / "bob" / "1.png", 200)
    _write_image(tmp_path / "carol" / "1.png", 150)

    class _DegenerateEmbedder(_IntensityEmbedder):
        def embed(self, crop):
            level = float(crop.mean())
            if level == 200.0:
                return np.zeros(2, dtype=np.float32)
            if level == 150.0:
                return np.ones(3, dtype=np.float32)
            return super().embed(crop)

    gallery = GalleryIndex()
    counts = enroll_directory(gallery, tmp_path, _DegenerateEmbedder())

    assert counts == {"alice": 1}
    assert gallery.identities() == ["alice"]
