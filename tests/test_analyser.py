import threading

import numpy as np
import pytest

from facewatch.config import MatchConfig
from facewatch.recognition.gallery import GalleryIndex
from facewatch.stream.analyser import FrameAnalyser
from facewatch.stream.gate import FrameGate
from facewatch.stream.pipeline import MatchPipeline
from facewatch.types import FaceRegion


FACE = FaceRegion(bbox=(10.0, 10.0, 50.0, 50.0), score=0.95)


class _StaticDetector:
    def __init__(self, regions=None, error: Exception = None) -> None:
        self.regions = [FACE] if regions is None else regions
        self.error = error
        self.calls = 0

    def detect(self, frame, frame_idx=-1):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.regions)


class _BlockingDetector(_StaticDetector):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.proceed = threading.Event()

    def detect(self, frame, frame_idx=-1):
        self.entered.set()
        assert self.proceed.wait(timeout=5.0)
        return super().detect(frame, frame_idx)


class _ConstantEmbedder:
    def embed(self, crop):
        return np.array([1.0, 0.0], dtype=np.float32)


def _gallery(populated: bool = True) -> GalleryIndex:
    gallery = GalleryIndex()
    if populated:
        gallery.add("alice", np.array([1.0, 0.0], dtype=np.float32))
    return gallery


def _analyser(detector, gallery=None, on_result=None) -> FrameAnalyser:
    gallery = _gallery() if gallery is None else gallery
    pipeline = MatchPipeline(gallery, _ConstantEmbedder(), None, MatchConfig(covering_check_enabled=False))
    return FrameAnalyser(detector, pipeline, on_result=on_result)


def _frame() -> np.ndarray:
    return np.full((64, 64, 3), 120, dtype=np.uint8)


def test_process_frame_publishes_predictions():
    published = []
    analyser = _analyser(_StaticDetector(), on_result=published.append)

    result = analyser.process_frame(_frame(), frame_idx=3)

    assert result is not None
    assert result.frame_idx == 3
    assert result.labels == ["alice"]
    assert (result.frame_width, result.frame_height) == (64, 64)
    assert published == [result]
    assert analyser.latest() is result
    assert analyser.gate.busy is False


def test_frames_dropped_while_gallery_empty():
    detector = _StaticDetector()
    analyser = _analyser(detector, gallery=_gallery(populated=False))

    assert analyser.process_frame(_frame()) is None
    assert analyser.submit(_frame()) is False
    assert detector.calls == 0
    stats = analyser.stats
    assert stats.frames_seen == 2
    assert stats.frames_dropped == 2
    analyser.close()


def test_submit_drops_frames_while_busy():
    detector = _BlockingDetector()
    published = []
    with _analyser(detector, on_result=published.append) as analyser:
        assert analyser.submit(_frame()) is True
        assert detector.entered.wait(timeout=5.0)

        assert analyser.submit(_frame()) is False
        assert analyser.process_frame(_frame()) is None

        detector.proceed.set()
        assert analyser.wait_idle(timeout=5.0)
        assert analyser.gate.busy is False
        assert analyser.submit(_frame()) is True
        assert analyser.wait_idle(timeout=5.0)

    assert [r.frame_idx for r in published] == [0, 3]
    assert detector.calls == 2
    stats = analyser.stats
    assert stats.frames_seen == 4
    assert stats.frames_dropped == 2
    assert stats.frames_processed == 2


def test_detector_failure_publishes_empty_result_and_releases_gate():
    published = []
    analyser = _analyser(_StaticDetector(error=RuntimeError("detector down")), on_result=published.append)

    result = analyser.process_frame(_frame())

    assert result is not None
    assert result.predictions == []
    assert published == [result]
    assert analyser.gate.busy is False
    assert analyser.stats.frames_failed == 1


def test_callback_error_does_not_stick_the_gate():
    def explode(result):
        raise ValueError("consumer bug")

    analyser = _analyser(_StaticDetector(), on_result=explode)

    first = analyser.process_frame(_frame())
    second = analyser.process_frame(_frame())

    assert first is not None and second is not None
    assert analyser.latest() is second


def test_submitted_frame_is_copied():
    seen = []

    class _RecordingDetector(_StaticDetector):
        def detect(self, frame, frame_idx=-1):
            seen.append(int(frame[0, 0, 0]))
            return super().detect(frame, frame_idx)

    with _analyser(_RecordingDetector()) as analyser:
        frame = _frame()
        assert analyser.submit(frame)
        frame[:] = 0
        assert analyser.wait_idle(timeout=5.0)

    assert seen == [120]


def test_submit_after_close_raises():
    analyser = _analyser(_StaticDetector())
    analyser.close()
    with pytest.raises(RuntimeError):
        analyser.submit(_frame())


def test_close_during_submit_does_not_start_a_worker():
    gallery = _gallery()

    class _ClosingGate(FrameGate):
        analyser = None

        def try_admit(self):
            admitted = super().try_admit()
            self.analyser.close()
            return admitted

    gate = _ClosingGate(gallery)
    pipeline = MatchPipeline(gallery, _ConstantEmbedder(), None, MatchConfig(covering_check_enabled=False))
    analyser = FrameAnalyser(_StaticDetector(), pipeline, gate=gate)
    gate.analyser = analyser

    with pytest.raises(RuntimeError):
        analyser.submit(_frame())

    assert gate.busy is False
    assert analyser._executor is None
