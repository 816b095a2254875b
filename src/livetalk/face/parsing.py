"""BiSeNet face parsing pre- and post-processing.

CelebAMask-HQ 19-class segmentation.
Input: [1, 3, 512, 512] RGB, ImageNet normalize.
Output: [1, 19, 512, 512] -> argmax -> class indices.
"""

from __future__ import annotations

import cv2
import numpy as np

from livetalk.face.types import ParsingMode

INPUT_SIZE = 512
NUM_CLASSES = 19
MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def preprocess(frame: np.ndarray) -> np.ndarray:
    """Resize to 512x512, normalize, NCHW float32."""
    resized = cv2.resize(frame, (INPUT_SIZE, INPUT_SIZE), interpolation=cv2.INTER_LINEAR)
    rgb = resized.astype(np.float32) / 255.0
    normalized = (rgb - MEAN) / STD
    # HWC -> CHW -> NCHW
    return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis])


def class_map_from_logits(logits: np.ndarray) -> np.ndarray:
    """(1, 19, H, W) logits -> (H, W) uint8 class indices."""
    arr = np.asarray(logits)
    if arr.ndim == 4:
        arr = arr[0]
    return np.argmax(arr, axis=0).astype(np.uint8)


def mask_from_class_map(
    class_map: np.ndarray, mode: ParsingMode, width: int, height: int
) -> np.ndarray:
    """Binary 0/255 mask of the mode's classes, resized to ``width`` x ``height``."""
    mask = np.isin(class_map, list(mode.classes)).astype(np.uint8) * 255
    if mask.shape[1] != width or mask.shape[0] != height:
        mask = cv2.resize(mask, (width, height), interpolation=cv2.INTER_LINEAR)
    return mask


def smooth_mask(mask: np.ndarray, mode: ParsingMode) -> np.ndarray:
    """Soften mask edges for blending.

    jaw: dilate 3x3, erode 2x2, Gaussian 5x5. Other modes: Gaussian 3x3.
    """
    if mode is ParsingMode.JAW:
        out = cv2.dilate(mask, np.ones((3, 3), np.uint8))
        out = cv2.erode(out, np.ones((2, 2), np.uint8))
        return cv2.GaussianBlur(out, (5, 5), 0)
    return cv2.GaussianBlur(mask, (3, 3), 0)


__all__ = [
    "INPUT_SIZE",
    "NUM_CLASSES",
    "preprocess",
    "class_map_from_logits",
    "mask_from_class_map",
    "smooth_mask",
]
