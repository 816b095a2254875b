"""Thread-safe frame stream between a generation worker and its consumer."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np

POLL_INTERVAL = 0.05


@dataclass
class GenerationStats:
    """Progress of one generation."""

    frames_produced: int = 0
    elapsed_s: float = 0.0

    @property
    def avg_ms_per_frame(self) -> float:
        if self.frames_produced == 0:
            return 0.0
        return self.elapsed_s * 1000.0 / self.frames_produced

    @property
    def fps(self) -> float:
        if self.elapsed_s <= 0:
            return 0.0
        return self.frames_produced / self.elapsed_s


class OutputStream:
    """Unbounded FIFO of generated frames.

    The producer calls :meth:`put` per frame and :meth:`finish` (or
    :meth:`fail`) once. Consumers iterate, which yields frames in order
    until the stream is finished and drained and then re-raises a
    producer error, if any.

    Example:
        >>> stream = orchestrator.lipsync(avatar, audio, 16000)
        >>> for frame in stream:
        ...     writer.write(frame)
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[np.ndarray]" = queue.Queue()
        self._finished = threading.Event()
        self._lock = threading.Lock()
        self._started = time.perf_counter()
        self._ended: Optional[float] = None
        self.total_expected_frames = 0
        self.frames_produced = 0
        self.error: Optional[BaseException] = None

    # ── Producer ──

    def put(self, frame: np.ndarray) -> None:
        with self._lock:
            self.frames_produced += 1
        self._queue.put(frame)

    def finish(self) -> None:
        if self._ended is None:
            self._ended = time.perf_counter()
        self._finished.set()

    def fail(self, error: BaseException) -> None:
        """Record a producer error and finish the stream."""
        self.error = error
        self.finish()

    # ── Consumer ──

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def has_frames(self) -> bool:
        return not self._queue.empty()

    def __len__(self) -> int:
        return self._queue.qsize()

    def get(self, timeout: Optional[float] = None) -> Optional[np.ndarray]:
        """Next frame, or ``None`` when none arrives within *timeout*."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def try_get(self) -> Optional[np.ndarray]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the producer finished. Returns the finished flag."""
        return self._finished.wait(timeout)

    def raise_if_failed(self) -> None:
        if self.error is not None:
            raise self.error

    def __iter__(self) -> Iterator[np.ndarray]:
        while True:
            frame = self.get(timeout=POLL_INTERVAL)
            if frame is not None:
                yield frame
                continue
            if self.finished and self._queue.empty():
                break
        self.raise_if_failed()

    @property
    def stats(self) -> GenerationStats:
        end = self._ended if self._ended is not None else time.perf_counter()
        return GenerationStats(frames_produced=self.frames_produced, elapsed_s=end - self._started)

    def __repr__(self) -> str:
        return (
            f"OutputStream(produced={self.frames_produced}, "
            f"expected={self.total_expected_frames}, finished={self.finished})"
        )


__all__ = ["OutputStream", "GenerationStats"]
