"""Pixel operations: warp, crop, resize and mask blending."""

from __future__ import annotations

from enum import Enum

import cv2
import numpy as np

from livetalk.errors import GeometryError
from livetalk.geometry.transforms import _as_affine


class SamplingMode(str, Enum):
    BILINEAR = "bilinear"
    NEAREST = "nearest"
    LANCZOS = "lanczos"

    @property
    def cv2_flag(self) -> int:
        return {
            SamplingMode.BILINEAR: cv2.INTER_LINEAR,
            SamplingMode.NEAREST: cv2.INTER_NEAREST,
            SamplingMode.LANCZOS: cv2.INTER_LANCZOS4,
        }[self]


def affine_transform(
    frame: np.ndarray, M, out_w: int, out_h: int,
    mode: SamplingMode = SamplingMode.BILINEAR,
) -> np.ndarray:
    """Warp *frame* with the forward matrix *M* into an ``out_w`` x ``out_h`` image.

    Each output pixel samples the source at ``M^-1 @ p``; pixels mapping
    outside the source are black.
    """
    return cv2.warpAffine(
        frame,
        _as_affine(M),
        (int(out_w), int(out_h)),
        flags=mode.cv2_flag,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )


def crop_frame(frame: np.ndarray, x: int, y: int, w: int, h: int) -> np.ndarray:
    """Crop a region, clamped to the image bounds.

    Raises:
        GeometryError: If the clamped region is empty.
    """
    height, width = frame.shape[:2]
    x1 = max(0, int(x))
    y1 = max(0, int(y))
    x2 = min(width, int(x) + int(w))
    y2 = min(height, int(y) + int(h))
    if x2 <= x1 or y2 <= y1:
        raise GeometryError(
            f"Crop ({x}, {y}, {w}, {h}) is empty for a {width}x{height} image"
        )
    return frame[y1:y2, x1:x2].copy()


def resize_frame(
    frame: np.ndarray, w: int, h: int,
    mode: SamplingMode = SamplingMode.BILINEAR,
) -> np.ndarray:
    """Resize to ``w`` x ``h``; returns a copy when the size already matches."""
    if w <= 0 or h <= 0:
        raise GeometryError(f"Cannot resize to {w}x{h}")
    if frame.shape[1] == w and frame.shape[0] == h:
        return frame.copy()
    return cv2.resize(frame, (int(w), int(h)), interpolation=mode.cv2_flag)


def alpha_blend(
    original: np.ndarray, overlay: np.ndarray, mask: np.ndarray
) -> np.ndarray:
    """``original * (1 - m) + overlay * m`` with ``m = mask / 255``.

    *mask* may be (H, W) or (H, W, C). Results are clamped to [0, 255]
    and truncated to uint8.
    """
    if original.shape != overlay.shape:
        raise GeometryError(
            f"Blend inputs differ in shape: {original.shape} vs {overlay.shape}"
        )
    alpha = mask.astype(np.float32) / 255.0
    if alpha.ndim == 2 and original.ndim == 3:
        alpha = alpha[..., np.newaxis]
    out = original.astype(np.float32) * (1.0 - alpha) + overlay.astype(np.float32) * alpha
    return np.clip(out, 0, 255).astype(np.uint8)


def paste_back(
    crop: np.ndarray, M_c2o, original: np.ndarray, mask: np.ndarray
) -> np.ndarray:
    """Warp *crop* into the original image through ``M_c2o`` and blend with *mask*.

    *mask* lives in original image space (see ``prepare_paste_back``).
    """
    h, w = original.shape[:2]
    warped = affine_transform(crop, M_c2o, w, h)
    return alpha_blend(original, warped, mask)


def prepare_paste_back(mask_template: np.ndarray, M_c2o, w: int, h: int) -> np.ndarray:
    """Warp a crop-space mask template into a ``w`` x ``h`` original-space mask."""
    return affine_transform(mask_template, M_c2o, w, h)


__all__ = [
    "SamplingMode",
    "affine_transform",
    "crop_frame",
    "resize_frame",
    "alpha_blend",
    "paste_back",
    "prepare_paste_back",
]
