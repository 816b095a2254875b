"""LiveTalkOrchestrator - single entry point for animation and lip sync.

Owns the shared face analysis service and both generation pipelines, and
runs every generation on one background worker so model sessions are never
used from two threads at once.

Architecture:
    caller ──→ animate() / lipsync() ──→ OutputStream (returned at once)
                    │
                    └── [worker thread] pipeline.generate(..., stream)
                              └── stream.put(frame) ... stream.finish()

Example:
    >>> with LiveTalkOrchestrator(config) as livetalk:
    ...     avatar = livetalk.prepare_avatar(frames)
    ...     for frame in livetalk.lipsync(avatar, samples, 44100):
    ...         writer.write(frame)
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence, Union

import numpy as np

from livetalk.config import LiveTalkConfig
from livetalk.errors import InputError
from livetalk.face.analysis import FaceAnalysis
from livetalk.frame import validate_frame
from livetalk.lipsync.musetalk import AvatarData, MuseTalkPipeline
from livetalk.motion.liveportrait import LivePortraitPipeline
from livetalk.pipeline.stream import OutputStream
from livetalk.runtime import SessionFactory

logger = logging.getLogger(__name__)


class LiveTalkOrchestrator:
    """Runs portrait animation and lip sync over shared models.

    Args:
        config: Shared configuration. Defaults to ``LiveTalkConfig()``.
        face_analysis: Shared face analysis service; created when omitted.
        session_factory: Passed to every model; mainly for tests.
        liveportrait: Pre-built animation pipeline.
        musetalk: Pre-built lip-sync pipeline.
    """

    def __init__(
        self,
        config: Optional[LiveTalkConfig] = None,
        face_analysis: Optional[FaceAnalysis] = None,
        session_factory: Optional[SessionFactory] = None,
        liveportrait: Optional[LivePortraitPipeline] = None,
        musetalk: Optional[MuseTalkPipeline] = None,
    ) -> None:
        self.config = config or LiveTalkConfig()
        self.config.apply_logging()
        self.face_analysis = face_analysis or FaceAnalysis(self.config, session_factory=session_factory)
        self.liveportrait = liveportrait or LivePortraitPipeline(
            self.face_analysis, self.config, session_factory=session_factory
        )
        self.musetalk = musetalk or MuseTalkPipeline(
            self.face_analysis, self.config, session_factory=session_factory
        )
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._closed = False
        self._generations = 0
        logger.info(
            "LiveTalk initialized (models: %s, memory usage: %s)",
            self.config.models_path, self.config.memory_usage.value,
        )

    # ── Worker ──

    def _worker(self) -> ThreadPoolExecutor:
        if self._closed:
            raise RuntimeError("Orchestrator is closed")
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="livetalk_")
        return self._executor

    def _submit(self, name: str, job: Callable[[OutputStream], object]) -> OutputStream:
        stream = OutputStream()
        self._generations += 1
        future = self._worker().submit(self._run, name, job, stream)
        self._futures = [f for f in self._futures if not f.done()] + [future]
        return stream

    @staticmethod
    def _run(name: str, job: Callable[[OutputStream], object], stream: OutputStream) -> None:
        logger.info("%s started", name)
        try:
            job(stream)
        except Exception as e:
            logger.error("%s failed: %s", name, e)
            stream.fail(e)
        finally:
            stream.finish()
        stats = stream.stats
        logger.info(
            "%s produced %d frames in %.2fs (%.1f ms/frame)",
            name, stats.frames_produced, stats.elapsed_s, stats.avg_ms_per_frame,
        )

    # ── Generation ──

    def animate(
        self, source_frame: np.ndarray, driving_frames: Iterable[np.ndarray]
    ) -> OutputStream:
        """Animate *source_frame* with the motion of *driving_frames*.

        Returns immediately; frames arrive on the returned stream in driving
        order.

        Raises:
            InputError: If *source_frame* is not a valid frame.
        """
        validate_frame(source_frame, "source frame")
        if driving_frames is None:
            raise InputError("driving frames are required")
        return self._submit(
            "Portrait animation",
            lambda stream: self.liveportrait.generate(source_frame, driving_frames, stream),
        )

    def prepare_avatar(self, frames: Sequence[np.ndarray]) -> AvatarData:
        """Analyse avatar frames once for repeated lip sync. Blocks until done."""
        if len(frames) == 0:
            raise InputError("No avatar frames given")
        return self._worker().submit(self.musetalk.process_avatar, list(frames)).result()

    def lipsync(
        self,
        avatar: Union[AvatarData, Sequence[np.ndarray]],
        audio_samples,
        sample_rate: int,
        channels: Optional[int] = None,
    ) -> OutputStream:
        """Lip-sync *avatar* to an audio clip.

        *avatar* is either prepared :class:`AvatarData` or raw avatar frames,
        which are then processed on the worker first.
        """
        if audio_samples is None or np.asarray(audio_samples).size == 0:
            raise InputError("Audio samples are empty")

        def job(stream: OutputStream) -> None:
            data = avatar
            if not isinstance(data, AvatarData):
                data = self.musetalk.process_avatar(list(data))
            self.musetalk.generate(audio_samples, sample_rate, data, stream, channels)

        return self._submit("Lip sync", job)

    # ── Lifecycle ──

    def wait(self, timeout: Optional[float] = None) -> None:
        """Wait for every submitted generation to finish."""
        for future in list(self._futures):
            future.result(timeout=timeout)
        self._futures = [f for f in self._futures if not f.done()]

    def close(self) -> None:
        """Finish pending work and release all models."""
        if self._closed:
            return
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.liveportrait.close()
        self.musetalk.close()
        self.face_analysis.close()
        self._closed = True
        logger.info("LiveTalk shut down after %d generation(s)", self._generations)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "LiveTalkOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


__all__ = ["LiveTalkOrchestrator"]
