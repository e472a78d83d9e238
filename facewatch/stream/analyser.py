"""Frame-stream driver: gate admission, face matching and result publishing."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

import numpy as np

from facewatch.detectors.face_retina import RetinaFaceDetector
from facewatch.stream.gate import FrameGate
from facewatch.stream.pipeline import MatchPipeline
from facewatch.types import FrameResult, Prediction

LOGGER = logging.getLogger("facewatch.stream.analyser")

ResultCallback = Callable[[FrameResult], None]


@dataclass
class AnalyserStats:
    frames_seen: int = 0
    frames_dropped: int = 0
    frames_processed: int = 0
    frames_failed: int = 0


class FrameAnalyser:
    """Runs detection and matching over a live frame stream.

    At most one frame is in flight: frames arriving while the previous one is
    still being classified (or while the gallery is empty) are dropped, never
    queued or retried. ``submit`` does the admission check on the caller's
    thread and the work on a single background worker, so frame delivery
    never blocks; ``process_frame`` does everything on the caller's thread.

    Every completed frame replaces the previously published result and is
    handed to ``on_result``. A frame whose detection fails publishes an empty
    prediction list.
    """

    def __init__(
        self,
        detector: RetinaFaceDetector,
        pipeline: MatchPipeline,
        on_result: Optional[ResultCallback] = None,
        gate: Optional[FrameGate] = None,
    ) -> None:
        self.detector = detector
        self.pipeline = pipeline
        self.on_result = on_result
        self.gate = gate or FrameGate(pipeline.gallery)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[Future] = None
        self._latest: Optional[FrameResult] = None
        self._stats = AnalyserStats()
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> "FrameAnalyser":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def stats(self) -> AnalyserStats:
        with self._lock:
            return replace(self._stats)

    def latest(self) -> Optional[FrameResult]:
        """Most recently published frame result (None before the first)."""
        with self._lock:
            return self._latest

    def process_frame(self, frame: np.ndarray, frame_idx: Optional[int] = None) -> Optional[FrameResult]:
        """Analyse ``frame`` synchronously; returns None when the frame is dropped."""
        idx = self._admit(frame_idx)
        if idx is None:
            return None
        try:
            return self._analyse(frame, idx)
        finally:
            self.gate.release()

    def submit(self, frame: np.ndarray, frame_idx: Optional[int] = None) -> bool:
        """Hand ``frame`` to the background worker; False means it was dropped."""
        with self._lock:
            if self._closed:
                raise RuntimeError("FrameAnalyser is closed")
        idx = self._admit(frame_idx)
        if idx is None:
            return False
        copy = np.array(frame, copy=True)
        try:
            with self._lock:
                # close() may have run since the check above
                if self._closed:
                    raise RuntimeError("FrameAnalyser is closed")
                self._pending = self._worker().submit(self._analyse_and_release, copy, idx)
        except BaseException:
            self.gate.release()
            raise
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the in-flight frame (if any) has been published."""
        with self._lock:
            pending = self._pending
        if pending is None:
            return True
        try:
            pending.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def close(self) -> None:
        """Finish the in-flight frame and stop the background worker."""
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        self.pipeline.close()
        stats = self.stats
        LOGGER.info(
            "Analyser closed: seen=%d processed=%d dropped=%d failed=%d",
            stats.frames_seen,
            stats.frames_processed,
            stats.frames_dropped,
            stats.frames_failed,
        )

    def _worker(self) -> ThreadPoolExecutor:
        # caller holds self._lock
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="facewatch-analyser")
        return self._executor

    def _admit(self, frame_idx: Optional[int]) -> Optional[int]:
        with self._lock:
            idx = self._stats.frames_seen if frame_idx is None else int(frame_idx)
            self._stats.frames_seen += 1
        if self.gate.try_admit():
            return idx
        with self._lock:
            self._stats.frames_dropped += 1
        LOGGER.debug("Frame %d dropped (busy or empty gallery)", idx)
        return None

    def _analyse_and_release(self, frame: np.ndarray, frame_idx: int) -> FrameResult:
        try:
            return self._analyse(frame, frame_idx)
        finally:
            self.gate.release()

    def _analyse(self, frame: np.ndarray, frame_idx: int) -> FrameResult:
        start = time.perf_counter()
        failed = False
        predictions: List[Prediction] = []
        try:
            regions = self.detector.detect(frame, frame_idx)
            predictions = self.pipeline.run(frame, regions, frame_idx)
        except Exception:
            LOGGER.exception("Frame %d: analysis failed; publishing no predictions", frame_idx)
            failed = True

        shape = getattr(frame, "shape", (0, 0))
        height, width = (int(shape[0]), int(shape[1])) if len(shape) >= 2 else (0, 0)
        result = FrameResult(
            frame_idx=frame_idx,
            predictions=predictions,
            frame_width=width,
            frame_height=height,
            elapsed_ms=(time.perf_counter() - start) * 1000.0,
        )
        with self._lock:
            self._stats.frames_processed += 1
            if failed:
                self._stats.frames_failed += 1
        LOGGER.debug(
            "Frame %d: %d predictions in %.1f ms %s",
            frame_idx,
            len(predictions),
            result.elapsed_ms,
            result.labels,
        )
        self._publish(result)
        return result

    def _publish(self, result: FrameResult) -> None:
        with self._lock:
            self._latest = result
        if self.on_result is None:
            return
        try:
            self.on_result(result)
        except Exception:
            LOGGER.exception("Frame %d: result callback raised", result.frame_idx)
