"""livetalk - Portrait animation and audio-driven lip sync.

Quick Start:
    >>> import livetalk as lt
    >>> config = lt.LiveTalkConfig(models_dir="./models")
    >>> with lt.LiveTalkOrchestrator(config) as livetalk:
    ...     for frame in livetalk.animate(portrait, driving_frames):
    ...         show(frame)

Lip sync:
    >>> with lt.LiveTalkOrchestrator(config) as livetalk:
    ...     avatar = livetalk.prepare_avatar(avatar_frames)
    ...     for frame in livetalk.lipsync(avatar, samples, 44100):
    ...         writer.write(frame)

Face analysis only:
    >>> analysis = lt.FaceAnalysis(config)
    >>> with analysis.analysis_session():
    ...     faces = analysis.detect(frame)
"""

from livetalk.config import LiveTalkConfig
from livetalk.errors import (
    DetectionFailure,
    GeometryError,
    InputError,
    LiveTalkError,
    ModelExecutionError,
    ModelNotLoadedError,
)
from livetalk.runtime import ExecutionProvider, MemoryUsage, Precision
from livetalk.face import FaceAnalysis, FaceDetectionResult
from livetalk.motion import LivePortraitPipeline
from livetalk.lipsync import AvatarData, MuseTalkPipeline
from livetalk.pipeline import LiveTalkOrchestrator, OutputStream

__version__ = "0.1.0"

__all__ = [
    "LiveTalkConfig",
    "DetectionFailure",
    "GeometryError",
    "InputError",
    "LiveTalkError",
    "ModelExecutionError",
    "ModelNotLoadedError",
    "ExecutionProvider",
    "MemoryUsage",
    "Precision",
    "FaceAnalysis",
    "FaceDetectionResult",
    "LivePortraitPipeline",
    "AvatarData",
    "MuseTalkPipeline",
    "LiveTalkOrchestrator",
    "OutputStream",
]
