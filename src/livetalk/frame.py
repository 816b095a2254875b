"""Frame validation and frame <-> tensor conversion.

A frame is an ``(H, W, 3)`` uint8 RGB array. Model tensors are float32
NCHW with a batch of one.
"""

from __future__ import annotations

import numpy as np

from livetalk.errors import InputError


def validate_frame(frame, name: str = "frame") -> np.ndarray:
    """Check that *frame* is a non-empty ``(H, W, 3)`` uint8 array.

    Raises:
        InputError: On ``None``, empty or wrongly shaped input.
    """
    if frame is None:
        raise InputError(f"{name} is None")
    if not isinstance(frame, np.ndarray):
        raise InputError(f"{name} must be a numpy array, got {type(frame).__name__}")
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise InputError(f"{name} must have shape (H, W, 3), got {frame.shape}")
    if frame.shape[0] <= 0 or frame.shape[1] <= 0:
        raise InputError(f"Invalid image parameters: {frame.shape}")
    if frame.dtype != np.uint8:
        raise InputError(f"{name} must be uint8, got {frame.dtype}")
    return frame


def frame_to_tensor(
    frame: np.ndarray,
    multiplier: float = 1.0,
    offset: float = 0.0,
    mask_lower_half: bool = False,
) -> np.ndarray:
    """``pixel * multiplier + offset`` as a (1, 3, H, W) float32 tensor.

    With ``mask_lower_half`` the bottom half rows are zeroed before
    normalisation, hiding the mouth region from an encoder.
    """
    data = frame
    if mask_lower_half:
        data = frame.copy()
        data[frame.shape[0] // 2:] = 0
    tensor = data.astype(np.float32) * multiplier + offset
    # HWC -> CHW -> NCHW
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis])


def tensor_to_frame(
    tensor: np.ndarray, low: float = 0.0, high: float = 1.0
) -> np.ndarray:
    """Map a (1, 3, H, W) or (3, H, W) tensor in ``[low, high]`` to a uint8 frame."""
    arr = np.asarray(tensor, dtype=np.float32)
    if arr.ndim == 4:
        arr = arr[0]
    if arr.ndim != 3 or arr.shape[0] != 3:
        raise InputError(f"Expected a 3-channel CHW tensor, got {arr.shape}")
    scaled = (arr - low) / (high - low) * 255.0
    return np.clip(np.rint(scaled), 0, 255).astype(np.uint8).transpose(1, 2, 0).copy()


__all__ = ["validate_frame", "frame_to_tensor", "tensor_to_frame"]
