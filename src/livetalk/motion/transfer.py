"""Keypoint motion math for portrait animation.

Keypoints are (K, 3) row vectors, rotated with ``kp @ R`` where ``R`` comes
from :func:`livetalk.geometry.rotation_matrix`.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from livetalk.geometry import rotation_matrix
from livetalk.motion.types import MotionInfo

HEADPOSE_BINS = 66

# Motion extractor output order
PITCH, YAW, ROLL, TRANSLATION, EXPRESSION, SCALE, KEYPOINTS = range(7)


def headpose_from_logits(logits) -> float:
    """Degrees from 66-bin head pose logits.

    Softmax, expectation over the bin index, then ``* 3 - 97.5``.
    A single value is taken to be degrees already.
    """
    arr = np.asarray(logits, dtype=np.float64).reshape(-1)
    if arr.size == 1:
        return float(arr[0])
    e = np.exp(arr - arr.max())
    prob = e / e.sum()
    return float(np.sum(prob * np.arange(arr.size)) * 3.0 - 97.5)


def motion_from_outputs(outputs: Sequence[np.ndarray]) -> MotionInfo:
    """Build :class:`MotionInfo` from ``[pitch, yaw, roll, t, exp, scale, kp]``.

    The arrays are copied, so scratch outputs may be passed in.
    """
    if len(outputs) < 7:
        raise ValueError(f"Motion extractor produced {len(outputs)} outputs, expected 7")
    return MotionInfo(
        pitch=headpose_from_logits(outputs[PITCH]),
        yaw=headpose_from_logits(outputs[YAW]),
        roll=headpose_from_logits(outputs[ROLL]),
        translation=np.array(outputs[TRANSLATION], dtype=np.float32).reshape(-1)[:3],
        expression=np.array(outputs[EXPRESSION], dtype=np.float32).reshape(-1, 3),
        scale=np.array(outputs[SCALE], dtype=np.float32).reshape(-1)[:1],
        keypoints=np.array(outputs[KEYPOINTS], dtype=np.float32).reshape(-1, 3),
    )


def _rotation(info: MotionInfo) -> np.ndarray:
    if info.rotation is None:
        return rotation_matrix(info.pitch, info.yaw, info.roll)
    return info.rotation


def transform_keypoints(info: MotionInfo) -> np.ndarray:
    """Source keypoints: ``(kp @ R + exp) * scale``, translated on x/y only."""
    kp = info.keypoints @ _rotation(info) + info.expression
    kp = kp * info.scale[0]
    kp[:, 0] += info.translation[0]
    kp[:, 1] += info.translation[1]
    return kp.astype(np.float32)


def compose_driving_motion(
    source: MotionInfo,
    driving: MotionInfo,
    driving0: MotionInfo,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Relative motion of *driving* against the first frame, applied to *source*.

    Rotations default to the pose angles when ``rotation`` is unset.

    Returns:
        (R_new, exp_new, scale_new, t_new) with ``t_new[2] == 0``.
    """
    r_new = _rotation(driving) @ _rotation(driving0).T @ _rotation(source)
    exp_new = source.expression + (driving.expression - driving0.expression)
    scale_new = source.scale * (driving.scale / driving0.scale)
    t_new = source.translation + (driving.translation - driving0.translation)
    t_new = np.array(t_new, dtype=np.float32)
    t_new[2] = 0.0
    return r_new, exp_new, scale_new, t_new


def apply_motion(
    kp_canonical: np.ndarray,
    rotation: np.ndarray,
    expression: np.ndarray,
    scale: np.ndarray,
    translation: np.ndarray,
) -> np.ndarray:
    """``(kp @ R + exp) * scale + t`` on all three axes."""
    kp = kp_canonical @ rotation + expression
    kp = kp * np.asarray(scale).reshape(-1)[0]
    return (kp + np.asarray(translation).reshape(1, 3)).astype(np.float32)


def stitching_features(kp_source: np.ndarray, kp_driving: np.ndarray) -> np.ndarray:
    """(1, 2 * K * 3) stitching model input."""
    return np.concatenate(
        [kp_source.reshape(-1), kp_driving.reshape(-1)]
    ).astype(np.float32)[np.newaxis]


def apply_stitching(kp_driving: np.ndarray, delta) -> np.ndarray:
    """Add the stitching delta to driving keypoints.

    The first ``K * 3`` values are per-keypoint offsets; two more, when
    present, shift every keypoint in x and y.
    """
    kp = np.array(kp_driving, dtype=np.float32).reshape(-1, 3)
    delta = np.asarray(delta, dtype=np.float32).reshape(-1)
    n = kp.size
    flat = kp.reshape(-1)
    m = min(n, delta.size)
    flat[:m] += delta[:m]
    kp = flat.reshape(-1, 3)
    if delta.size >= n + 2:
        kp[:, 0] += delta[n]
        kp[:, 1] += delta[n + 1]
    return kp


__all__ = [
    "HEADPOSE_BINS",
    "headpose_from_logits",
    "motion_from_outputs",
    "transform_keypoints",
    "compose_driving_motion",
    "apply_motion",
    "stitching_features",
    "apply_stitching",
]
