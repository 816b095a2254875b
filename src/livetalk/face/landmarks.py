"""Landmark decoding, crop estimation and avatar face boxes."""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from livetalk.face.types import CropInfo
from livetalk.geometry import (
    affine_transform,
    estimate_similarity_transform,
    face_align,
    invert_affine,
    transform_points,
)

logger = logging.getLogger(__name__)

LANDMARK_INPUT_SIZE = 192
LANDMARK_BOX_SCALE = 1.5
REFINER_INPUT_SIZE = 224
REFINER_SCALE = 1.5
REFINER_VY_RATIO = -0.1

# Avatar box tuning. Hybrid boxes keep 90% of the detector size around the
# landmark centre; fallback boxes grow the detector box by 5%.
HYBRID_SIZE_RATIO = 0.9
FALLBACK_EXPANSION = 1.05
NOSE_TIP_INDEX = 66
DEFAULT_LANDMARK_RANGE = (20.0, 20.0)

BBox = Tuple[float, float, float, float]


def landmark_alignment(bbox, input_size: int = LANDMARK_INPUT_SIZE) -> np.ndarray:
    """Alignment matrix for the 106-point model.

    The crop is centred on the box with ``scale = input_size / (max(w, h) * 1.5)``.
    """
    x1, y1, x2, y2 = (float(v) for v in bbox)
    w, h = x2 - x1, y2 - y1
    center = (x1 + w * 0.5, y1 + h * 0.5)
    scale = input_size / (max(w, h) * LANDMARK_BOX_SCALE)
    return face_align(center, input_size, scale, 0.0)


def decode_landmarks_106(
    output: np.ndarray, M_align: np.ndarray, input_size: int = LANDMARK_INPUT_SIZE
) -> np.ndarray:
    """Map raw ``[-1, 1]`` model output back to original image pixels."""
    pts = np.asarray(output, dtype=np.float64).reshape(-1, 2)
    pts = (pts + 1.0) * (input_size / 2.0)
    return transform_points(pts, invert_affine(M_align))


def decode_refined_landmarks(
    output: np.ndarray, crop_info: CropInfo, crop_size: int = REFINER_INPUT_SIZE
) -> np.ndarray:
    """Map refiner output in ``[0, 1]`` crop units back to original pixels."""
    pts = np.asarray(output, dtype=np.float64).reshape(-1, 2) * crop_size
    return transform_points(pts, crop_info.transform)


def get_crop_info(
    frame: np.ndarray,
    landmarks,
    dsize: int,
    scale: float,
    vy_ratio: float,
) -> CropInfo:
    """Aligned ``dsize`` x ``dsize`` crop around *landmarks*.

    Both transforms of the returned :class:`CropInfo` come from the same
    estimation.
    """
    m_o2c, m_c2o = estimate_similarity_transform(
        landmarks, dsize, scale, 0.0, vy_ratio, rotate=True
    )
    crop = affine_transform(frame, m_o2c, dsize, dsize)
    return CropInfo(
        image_crop=crop,
        landmarks_crop=transform_points(landmarks, m_o2c),
        transform=m_c2o,
        inverse_transform=m_o2c,
    )


def hybrid_bbox(landmarks, det_bbox, bbox_shift: int = 0) -> BBox:
    """Avatar face box centred on the landmarks with the detector's size.

    ``x1``/``y1`` are clamped at zero and the size is kept, so the box may
    slide right/down at the image border. A non-zero ``bbox_shift`` moves
    the box vertically.
    """
    pts = np.asarray(landmarks, dtype=np.float64).reshape(-1, 2)
    cx, cy = pts.mean(axis=0)
    dx1, dy1, dx2, dy2 = (float(v) for v in det_bbox)
    face_w = (dx2 - dx1) * HYBRID_SIZE_RATIO
    face_h = (dy2 - dy1) * HYBRID_SIZE_RATIO

    x1 = max(0.0, cx - face_w * 0.5)
    y1 = max(0.0, cy - face_h * 0.5)
    x2 = x1 + face_w
    y2 = y1 + face_h

    # Shift is measured from the nose tip, so it needs that landmark
    if bbox_shift != 0 and len(pts) > NOSE_TIP_INDEX:
        y1 += bbox_shift
        y2 += bbox_shift
    return (float(x1), float(y1), float(x2), float(y2))


def fallback_bbox(det_bbox) -> BBox:
    """Detector box grown by 5% around its centre, clamped at zero."""
    dx1, dy1, dx2, dy2 = (float(v) for v in det_bbox)
    w, h = dx2 - dx1, dy2 - dy1
    cx, cy = dx1 + w * 0.5, dy1 + h * 0.5
    new_w, new_h = w * FALLBACK_EXPANSION, h * FALLBACK_EXPANSION
    x1 = max(0.0, cx - new_w * 0.5)
    y1 = max(0.0, cy - new_h * 0.5)
    return (x1, y1, x1 + new_w, y1 + new_h)


def is_valid_bbox(bbox: Sequence[float]) -> bool:
    x1, y1, x2, y2 = bbox
    return x2 - x1 > 0 and y2 - y1 > 0 and x1 >= 0


def landmark_ranges(landmarks) -> Tuple[float, float]:
    """Vertical spans around the nose tip, (|l67 - l66|, |l66 - l65|)."""
    pts = np.asarray(landmarks, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 68:
        return DEFAULT_LANDMARK_RANGE
    return (
        float(abs(pts[67, 1] - pts[66, 1])),
        float(abs(pts[66, 1] - pts[65, 1])),
    )


def avatar_bbox(
    landmarks: Optional[np.ndarray], det_bbox, bbox_shift: int = 0,
    frame_index: Optional[int] = None,
) -> BBox:
    """Hybrid box when landmarks are usable, otherwise the fallback box."""
    if landmarks is None or len(landmarks) < 106:
        logger.warning("No usable 106 landmarks for frame %s, using detection box", frame_index)
        return fallback_bbox(det_bbox)
    box = hybrid_bbox(landmarks, det_bbox, bbox_shift)
    if not is_valid_bbox(box):
        logger.warning(
            "Invalid landmark bbox %s for frame %s, using detection box",
            tuple(round(v, 1) for v in box), frame_index,
        )
        return fallback_bbox(det_bbox)
    return box


__all__ = [
    "LANDMARK_INPUT_SIZE",
    "REFINER_INPUT_SIZE",
    "landmark_alignment",
    "decode_landmarks_106",
    "decode_refined_landmarks",
    "get_crop_info",
    "hybrid_bbox",
    "fallback_bbox",
    "is_valid_bbox",
    "landmark_ranges",
    "avatar_bbox",
]
