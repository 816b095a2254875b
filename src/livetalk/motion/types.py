"""Motion data carried between LivePortrait stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from livetalk.face.types import CropInfo


@dataclass
class MotionInfo:
    """Head pose, expression and implicit keypoints of one face.

    Attributes:
        pitch: Degrees.
        yaw: Degrees.
        roll: Degrees.
        translation: (3,) translation.
        expression: (K, 3) expression deformation.
        scale: (1,) scale.
        keypoints: (K, 3) canonical keypoints.
        rotation: (3, 3) rotation matrix, filled in for driving frames.
    """

    pitch: float
    yaw: float
    roll: float
    translation: np.ndarray
    expression: np.ndarray
    scale: np.ndarray
    keypoints: np.ndarray
    rotation: Optional[np.ndarray] = None

    @property
    def num_keypoints(self) -> int:
        return int(self.keypoints.shape[0])


@dataclass
class PredictionState:
    """Per-session driving state.

    ``landmarks`` tracks the face across driving frames; ``initial_motion``
    is the motion of the first driving frame, against which later frames
    are measured.
    """

    landmarks: Optional[np.ndarray] = None
    initial_motion: Optional[MotionInfo] = None
    frames_processed: int = 0

    @property
    def frame0(self) -> bool:
        return self.landmarks is None


@dataclass
class SourceState:
    """Everything derived once from the source portrait.

    Attributes:
        frame: Source image after size preprocessing.
        crop_info: 512 crop (with its 256 resize) and transform pair.
        motion: Source motion.
        rotation: Source rotation matrix ``Rs``.
        features: Appearance feature volume (1, 32, 16, 64, 64).
        keypoints: Source keypoints after pose/expression transform (K, 3).
        paste_mask: Paste-back mask in source image space.
    """

    frame: np.ndarray
    crop_info: CropInfo
    motion: MotionInfo
    rotation: np.ndarray
    features: np.ndarray
    keypoints: np.ndarray
    paste_mask: np.ndarray


__all__ = ["MotionInfo", "PredictionState", "SourceState"]
