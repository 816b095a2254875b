"""Head rotation matrices."""

from __future__ import annotations

import numpy as np


def _first(value) -> float:
    arr = np.asarray(value, dtype=np.float64).ravel()
    if arr.size == 0:
        raise ValueError("Angle array cannot be empty")
    return float(arr[0])


def rotation_matrix(pitch, yaw, roll) -> np.ndarray:
    """Rotation matrix from Euler angles in degrees.

    Composes ``Rz(roll) @ Ry(yaw) @ Rx(pitch)`` and returns its transpose,
    so keypoints stored as row vectors rotate with ``kp @ R``.
    Array arguments use their first element (batch of one).
    """
    p = np.radians(_first(pitch))
    y = np.radians(_first(yaw))
    r = np.radians(_first(roll))

    cp, sp = np.cos(p), np.sin(p)
    cy, sy = np.cos(y), np.sin(y)
    cr, sr = np.cos(r), np.sin(r)

    rot_x = np.array([
        [1, 0, 0],
        [0, cp, -sp],
        [0, sp, cp],
    ])
    rot_y = np.array([
        [cy, 0, sy],
        [0, 1, 0],
        [-sy, 0, cy],
    ])
    rot_z = np.array([
        [cr, -sr, 0],
        [sr, cr, 0],
        [0, 0, 1],
    ])
    return (rot_z @ rot_y @ rot_x).T


__all__ = ["rotation_matrix"]
