"""Composite generated mouth regions back into avatar frames."""

from __future__ import annotations

from typing import Optional, Sequence, Union

import numpy as np

from livetalk.compositing.segmentation import SegmentationData
from livetalk.errors import GeometryError, InputError
from livetalk.face.types import ParsingMode
from livetalk.geometry import SamplingMode, resize_frame

ALPHA_EPSILON = 0.001


def _paste(canvas: np.ndarray, patch: np.ndarray, x: int, y: int) -> None:
    """Copy *patch* into *canvas* at (x, y), clipped to the canvas."""
    height, width = canvas.shape[:2]
    ph, pw = patch.shape[:2]
    x1, y1 = max(0, x), max(0, y)
    x2, y2 = min(width, x + pw), min(height, y + ph)
    if x2 > x1 and y2 > y1:
        canvas[y1:y2, x1:x2] = patch[y1 - y:y2 - y, x1 - x:x2 - x]


def composite_with_mask(
    original: np.ndarray, overlay: np.ndarray, mask: np.ndarray, x: int, y: int
) -> np.ndarray:
    """Alpha blend *overlay* onto a copy of *original* at (x, y).

    Pixels with ``mask / 255 <= 0.001`` keep the original value; the others
    are truncated to uint8.
    """
    out = original.copy()
    height, width = out.shape[:2]
    oh, ow = overlay.shape[:2]
    x1, y1 = max(0, x), max(0, y)
    x2, y2 = min(width, x + ow), min(height, y + oh)
    if x2 <= x1 or y2 <= y1:
        return out

    src = overlay[y1 - y:y2 - y, x1 - x:x2 - x].astype(np.float32)
    dst = out[y1:y2, x1:x2].astype(np.float32)
    alpha = mask[y1 - y:y2 - y, x1 - x:x2 - x].astype(np.float32) / 255.0
    alpha = alpha[..., np.newaxis]
    blended = src * alpha + dst * (1.0 - alpha)
    region = np.where(alpha > ALPHA_EPSILON, blended, dst)
    out[y1:y2, x1:x2] = np.clip(region, 0, 255).astype(np.uint8)
    return out


def blend_face_with_original(
    original: np.ndarray,
    face: np.ndarray,
    bbox: Sequence[float],
    segmentation: Optional[SegmentationData],
    mode: Union[ParsingMode, str] = ParsingMode.JAW,
    extra_margin: int = 10,
) -> np.ndarray:
    """Blend a generated face crop into the full avatar frame.

    *face* is resized to the face box, pasted into the precomputed large
    crop and composited into *original* through the blurred mask.

    Raises:
        InputError: If no segmentation data is given.
        GeometryError: If the face box is degenerate.
    """
    if segmentation is None or segmentation.blurred_mask is None:
        raise InputError("Blending needs precomputed segmentation data")
    if not isinstance(mode, ParsingMode):
        mode = ParsingMode.from_string(mode)

    x1, y1, x2, y2 = (float(v) for v in bbox)
    if mode is ParsingMode.JAW:
        y2 = min(y2 + extra_margin, float(original.shape[0]))
    w, h = int(x2 - x1), int(y2 - y1)
    if w <= 0 or h <= 0:
        raise GeometryError(f"Degenerate face box: {(x1, y1, x2, y2)}")

    cx, cy = segmentation.crop_box[0], segmentation.crop_box[1]
    face_large = segmentation.face_large.copy()
    _paste(face_large, resize_frame(face, w, h, SamplingMode.BILINEAR), int(x1 - cx), int(y1 - cy))
    return composite_with_mask(original, face_large, segmentation.blurred_mask, int(cx), int(cy))


__all__ = ["composite_with_mask", "blend_face_with_original"]
