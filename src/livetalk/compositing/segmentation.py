"""Per-avatar-frame blend masks for lip sync.

Everything here depends only on the avatar frame and its face box, so it is
computed once per avatar frame and reused for every generated frame:

    face box --v15 margin--> adjusted box --x1.5--> crop box --crop--> face_large
    face_large --parsing (jaw)--> segmentation mask
    segmentation mask --face box crop/paste--> full mask
    full mask --zero upper half--> boundary mask --Gaussian--> blurred mask
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence, Tuple

import cv2
import numpy as np

from livetalk.errors import GeometryError
from livetalk.face.types import ParsingMode
from livetalk.geometry import crop_frame, expand_bounding_box, resize_frame

if TYPE_CHECKING:
    from livetalk.face.analysis import FaceAnalysis

logger = logging.getLogger(__name__)

CROP_EXPAND = 1.5
UPPER_BOUNDARY_RATIO = 0.5
BLUR_FACTOR = 0.08
MIN_BLUR_KERNEL = 15

Box = Tuple[float, float, float, float]


@dataclass
class SegmentationData:
    """Precomputed blend inputs of one avatar frame.

    Attributes:
        face_large: Crop of the avatar frame around the face.
        segmentation_mask: Parsing mask at face_large size.
        adjusted_bbox: Face box after the version margin.
        crop_box: (x1, y1, x2, y2) region of the frame covered by face_large.
        mask_small: Segmentation mask cropped to the face box.
        full_mask: mask_small pasted on a black face_large sized canvas.
        boundary_mask: full_mask with the upper half zeroed.
        blurred_mask: Final alpha mask at face_large size.
    """

    face_large: np.ndarray
    segmentation_mask: np.ndarray
    adjusted_bbox: Box
    crop_box: Tuple[int, int, int, int]
    mask_small: np.ndarray
    full_mask: np.ndarray
    boundary_mask: np.ndarray
    blurred_mask: np.ndarray


def adjust_face_bbox(bbox: Sequence[float], version: str, extra_margin: int, height: int) -> Box:
    """v15 extends the box bottom by ``extra_margin``, clamped to the image."""
    x1, y1, x2, y2 = (float(v) for v in bbox)
    if version == "v15":
        y2 = min(y2 + extra_margin, float(height))
    return (x1, y1, x2, y2)


def crop_region(frame: np.ndarray, box: Sequence[int]) -> Tuple[np.ndarray, Tuple[int, int, int, int]]:
    """Crop *box* clamped to the frame; returns the crop and the clamped box."""
    height, width = frame.shape[:2]
    x1, y1, x2, y2 = (int(v) for v in box)
    cx1, cy1 = max(0, x1), max(0, y1)
    cx2, cy2 = min(width, x2), min(height, y2)
    crop = crop_frame(frame, cx1, cy1, cx2 - cx1, cy2 - cy1)
    return crop, (cx1, cy1, cx2, cy2)


def create_small_mask(mask: np.ndarray, face_bbox: Sequence[float], crop_box: Sequence[int]) -> np.ndarray:
    """Crop the face box region out of a crop-box sized mask."""
    x, y, x1, y1 = face_bbox
    xs, ys = crop_box[0], crop_box[1]
    return crop_frame(mask, int(x - xs), int(y - ys), int(x1 - x), int(y1 - y))


def create_full_mask(
    mask: np.ndarray, mask_small: np.ndarray, face_bbox: Sequence[float], crop_box: Sequence[int]
) -> np.ndarray:
    """Paste *mask_small* at the face offset on a black canvas of *mask*'s size."""
    full = np.zeros_like(mask)
    height, width = full.shape[:2]
    px = int(round(face_bbox[0] - crop_box[0]))
    py = int(round(face_bbox[1] - crop_box[1]))
    sh, sw = mask_small.shape[:2]
    x1, y1 = max(0, px), max(0, py)
    x2, y2 = min(width, px + sw), min(height, py + sh)
    if x2 > x1 and y2 > y1:
        full[y1:y2, x1:x2] = mask_small[y1 - py:y2 - py, x1 - px:x2 - px]
    return full


def apply_upper_boundary_ratio(mask: np.ndarray, ratio: float = UPPER_BOUNDARY_RATIO) -> np.ndarray:
    """Zero the rows above ``round(height * ratio)`` so the upper face stays original."""
    out = mask.copy()
    boundary = int(round(mask.shape[0] * ratio))
    out[:boundary] = 0
    return out


def blur_kernel_size(width: int) -> int:
    return max(int(round(BLUR_FACTOR * width / 2)) * 2 + 1, MIN_BLUR_KERNEL)


def blur_mask(mask: np.ndarray) -> np.ndarray:
    """Gaussian blur with a kernel of ~8% of the mask width (odd, >= 15)."""
    k = blur_kernel_size(mask.shape[1])
    return cv2.GaussianBlur(mask, (k, k), 0)


def precompute_segmentation(
    frame: np.ndarray,
    bbox: Sequence[float],
    face_analysis: "FaceAnalysis",
    version: str = "v15",
    extra_margin: int = 10,
    mode: ParsingMode = ParsingMode.JAW,
) -> SegmentationData:
    """Build the blend masks of one avatar frame.

    Needs an open parsing session on *face_analysis*.

    Raises:
        GeometryError: If the face box is degenerate.
    """
    height = frame.shape[0]
    adjusted = adjust_face_bbox(bbox, version, extra_margin, height)
    if adjusted[2] <= adjusted[0] or adjusted[3] <= adjusted[1]:
        raise GeometryError(f"Degenerate face box: {tuple(adjusted)}")
    expanded = expand_bounding_box(adjusted, CROP_EXPAND)
    face_large, crop_box = crop_region(frame, expanded)

    mask = face_analysis.generate_parsing_mask(face_large, mode)
    lh, lw = face_large.shape[:2]
    if mask.shape[:2] != (lh, lw):
        mask = resize_frame(mask, lw, lh)

    mask_small = create_small_mask(mask, adjusted, crop_box)
    full_mask = create_full_mask(mask, mask_small, adjusted, crop_box)
    boundary_mask = apply_upper_boundary_ratio(full_mask)
    blurred_mask = blur_mask(boundary_mask)
    if not blurred_mask.any():
        logger.warning("Blend mask is empty for face box %s", tuple(round(v, 1) for v in adjusted))

    return SegmentationData(
        face_large=face_large,
        segmentation_mask=mask,
        adjusted_bbox=adjusted,
        crop_box=crop_box,
        mask_small=mask_small,
        full_mask=full_mask,
        boundary_mask=boundary_mask,
        blurred_mask=blurred_mask,
    )


__all__ = [
    "SegmentationData",
    "adjust_face_bbox",
    "crop_region",
    "create_small_mask",
    "create_full_mask",
    "apply_upper_boundary_ratio",
    "blur_kernel_size",
    "blur_mask",
    "precompute_segmentation",
]
