"""Single-flight admission control for incoming frames."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Sized


class FrameGate:
    """Admits at most one frame at a time; frames arriving while busy are dropped.

    Per-frame work is much slower than the camera cadence, so dropping (not
    queueing) keeps memory and latency bounded. A frame is also refused while
    the gallery is empty because there is nothing to match against. The
    gallery size is read without its lock, so a concurrent enrollment may
    cause one extra frame to be admitted or dropped.
    """

    def __init__(self, gallery: Sized) -> None:
        self._gallery = gallery
        self._busy = False
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    def try_admit(self) -> bool:
        """Idle -> Busy if the gallery is non-empty; otherwise refuse."""
        with self._lock:
            if self._busy or len(self._gallery) == 0:
                return False
            self._busy = True
            return True

    def release(self) -> None:
        """Busy -> Idle. Must be called once per successful ``try_admit``."""
        with self._lock:
            if not self._busy:
                raise RuntimeError("FrameGate.release() called while idle")
            self._busy = False

    @contextmanager
    def admission(self) -> Iterator[bool]:
        """Yield whether the frame was admitted; release on every exit path."""
        admitted = self.try_admit()
        try:
            yield admitted
        finally:
            if admitted:
                self.release()
