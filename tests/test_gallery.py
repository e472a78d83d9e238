import threading

import numpy as np
import pytest

from facewatch.errors import DimensionMismatchError, GalleryEmptyError
from facewatch.recognition.gallery import GalleryIndex
from facewatch.recognition.metrics import Metric, l2_distance


def _vec(*values: float) -> np.ndarray:
    return np.array(values, dtype=np.float32)


def test_clusters_group_by_identity_in_insertion_order():
    e1, e2, e3 = _vec(1.0, 0.0, 0.0), _vec(0.9, 0.1, 0.0), _vec(0.0, 1.0, 0.0)
    gallery = GalleryIndex()
    gallery.add("alice", e1)
    gallery.add("alice", e2)
    gallery.add("bob", e3)

    clusters = gallery.clusters_by_identity()

    assert set(clusters) == {"alice", "bob"}
    assert len(clusters["alice"]) == 2
    np.testing.assert_array_equal(clusters["alice"][0], e1)
    np.testing.assert_array_equal(clusters["alice"][1], e2)
    np.testing.assert_array_equal(clusters["bob"][0], e3)
    assert len(gallery) == 3


def test_best_match_l2_query_equal_to_member():
    e1, e2, e3 = _vec(1.0, 0.0, 0.0), _vec(0.6, 0.8, 0.0), _vec(0.0, 0.0, 1.0)
    gallery = GalleryIndex()
    gallery.add("alice", e1)
    gallery.add("alice", e2)
    gallery.add("bob", e3)

    identity, score = gallery.best_match(e1, Metric.L2)

    assert identity == "alice"
    assert score <= (0.0 + l2_distance(e1, e2)) / 2 + 1e-6


def test_best_match_cosine_picks_highest_mean():
    gallery = GalleryIndex()
    gallery.add("alice", _vec(1.0, 0.0))
    gallery.add("bob", _vec(0.0, 1.0))
    gallery.add("bob", _vec(0.1, 1.0))

    identity, score = gallery.best_match(_vec(0.0, 2.0), "cosine")

    assert identity == "bob"
    assert 0.9 < score <= 1.0


def test_best_match_tie_goes_to_first_enrolled_identity():
    gallery = GalleryIndex()
    gallery.add("zed", _vec(1.0, 0.0))
    gallery.add("amy", _vec(0.0, 1.0))
    query = _vec(1.0, 1.0)  # equidistant from both

    assert gallery.best_match(query, Metric.L2)[0] == "zed"
    assert gallery.best_match(query, Metric.COSINE)[0] == "zed"


def test_best_match_on_empty_gallery_raises():
    with pytest.raises(GalleryEmptyError):
        GalleryIndex().best_match(_vec(1.0, 0.0), Metric.L2)


def test_add_validates_embeddings():
    gallery = GalleryIndex()
    with pytest.raises(ValueError):
        gallery.add("", _vec(1.0, 0.0))
    with pytest.raises(ValueError):
        gallery.add("alice", _vec(0.0, 0.0))
    with pytest.raises(ValueError):
        gallery.add("alice", _vec(np.nan, 1.0))
    with pytest.raises(ValueError):
        gallery.add("alice", np.ones((2, 2), dtype=np.float32))
    gallery.add("alice", _vec(1.0, 0.0))
    with pytest.raises(DimensionMismatchError):
        gallery.add("bob", _vec(1.0, 0.0, 0.0))
    assert gallery.dimension == 2


def test_entries_are_immutable_copies():
    source = _vec(1.0, 0.0)
    gallery = GalleryIndex()
    entry = gallery.add("alice", source)
    source[0] = 5.0
    assert entry.embedding[0] == 1.0
    with pytest.raises(ValueError):
        entry.embedding[0] = 2.0


def test_snapshot_is_isolated_from_later_enrollment():
    gallery = GalleryIndex()
    gallery.add("alice", _vec(1.0, 0.0))
    snapshot = gallery.snapshot()
    gallery.add("bob", _vec(0.0, 1.0))

    assert snapshot.identities == ["alice"]
    assert snapshot.best_match(_vec(0.0, 1.0), Metric.L2)[0] == "alice"
    assert gallery.identities() == ["alice", "bob"]


def test_remove_and_clear():
    gallery = GalleryIndex()
    gallery.add("alice", _vec(1.0, 0.0))
    gallery.add("alice", _vec(0.9, 0.1))
    gallery.add("bob", _vec(0.0, 1.0))

    assert gallery.remove("alice") == 2
    assert gallery.identities() == ["bob"]
    gallery.clear()
    assert len(gallery) == 0
    assert gallery.dimension is None


def test_concurrent_enrollment_keeps_every_entry():
    gallery = GalleryIndex()

    def enroll(name: str) -> None:
        for i in range(50):
            gallery.add(name, _vec(1.0, float(i)))

    threads = [threading.Thread(target=enroll, args=(f"p{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    clusters = gallery.clusters_by_identity()
    assert len(gallery) == 200
    assert all(len(embeds) == 50 for embeds in clusters.values())


def test_snapshot_clusters_are_read_only():
    gallery = GalleryIndex()
    gallery.add("alice", _vec(1.0, 0.0))
    gallery.add("alice", _vec(0.8, 0.6))

    stack = gallery.snapshot().clusters()["alice"]

    assert stack.shape == (2, 2)
    with pytest.raises(ValueError):
        stack[0, 0] = 9.0


def test_best_match_single_identity():
    gallery = GalleryIndex()
    gallery.add("solo", _vec(0.0, 1.0))
    identity, score = gallery.best_match(_vec(0.0, 1.0), Metric.COSINE)
    assert identity == "solo"
    assert score == pytest.approx(1.0)
