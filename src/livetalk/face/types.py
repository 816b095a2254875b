"""Data types produced by face analysis."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import FrozenSet, Optional, Tuple

import numpy as np


@dataclass
class DetectionCandidate:
    """Raw SCRFD detection before NMS.

    Attributes:
        bbox: (x1, y1, x2, y2) in pixels of the frame being decoded.
        score: Detection confidence [0, 1].
        kps: Five keypoints (5, 2): eyes, nose, mouth corners.
    """

    bbox: np.ndarray
    score: float
    kps: np.ndarray

    @property
    def area(self) -> float:
        x1, y1, x2, y2 = self.bbox
        return float((x2 - x1) * (y2 - y1))


@dataclass
class FaceDetectionResult:
    """One detected face.

    Attributes:
        bbox: (x1, y1, x2, y2) in original image pixels.
        kps5: Five SCRFD keypoints (5, 2).
        score: Detection confidence.
        landmarks106: 106-point landmarks (106, 2), ``None`` until extracted.
    """

    bbox: np.ndarray
    kps5: np.ndarray
    score: float
    landmarks106: Optional[np.ndarray] = None

    @property
    def width(self) -> float:
        return float(self.bbox[2] - self.bbox[0])

    @property
    def height(self) -> float:
        return float(self.bbox[3] - self.bbox[1])

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (
            float(self.bbox[0] + self.bbox[2]) / 2,
            float(self.bbox[1] + self.bbox[3]) / 2,
        )

    def __repr__(self) -> str:
        x1, y1, x2, y2 = (float(v) for v in self.bbox)
        return f"Face(bbox=({x1:.1f}, {y1:.1f}, {x2:.1f}, {y2:.1f}), score={self.score:.3f})"


@dataclass
class CropInfo:
    """An aligned face crop and the transform pair that produced it.

    Attributes:
        image_crop: Aligned crop (dsize x dsize).
        landmarks_crop: Landmarks in crop coordinates.
        transform: Crop -> original (2x3, M_c2o).
        inverse_transform: Original -> crop (2x3, M_o2c).
        image_crop_256: Crop resized to 256 x 256, when requested.
    """

    image_crop: np.ndarray
    landmarks_crop: np.ndarray
    transform: np.ndarray
    inverse_transform: np.ndarray
    image_crop_256: Optional[np.ndarray] = None


class FaceClass(IntEnum):
    """BiSeNet (CelebAMask-HQ) parsing classes."""

    BACKGROUND = 0
    SKIN = 1
    LEFT_BROW = 2
    RIGHT_BROW = 3
    LEFT_EYE = 4
    RIGHT_EYE = 5
    EYE_GLASSES = 6
    LEFT_EAR = 7
    RIGHT_EAR = 8
    EARRING = 9
    NOSE = 10
    MOUTH = 11
    UPPER_LIP = 12
    LOWER_LIP = 13
    NECK = 14
    NECKLACE = 15
    CLOTH = 16
    HAIR = 17
    HAT = 18


_FACE_AND_LIPS = frozenset({
    FaceClass.SKIN, FaceClass.MOUTH, FaceClass.UPPER_LIP, FaceClass.LOWER_LIP,
})


class ParsingMode(str, Enum):
    """Which parsing classes form the blend mask."""

    JAW = "jaw"
    NECK = "neck"
    RAW = "raw"

    @property
    def classes(self) -> FrozenSet[int]:
        if self is ParsingMode.NECK:
            return _FACE_AND_LIPS | {FaceClass.NECK}
        return _FACE_AND_LIPS

    @classmethod
    def from_string(cls, name: str) -> "ParsingMode":
        try:
            return cls(name.lower())
        except ValueError:
            raise ValueError(
                f"Unknown parsing mode: {name}. Use 'jaw', 'neck' or 'raw'."
            ) from None


__all__ = [
    "DetectionCandidate",
    "FaceDetectionResult",
    "CropInfo",
    "FaceClass",
    "ParsingMode",
]
