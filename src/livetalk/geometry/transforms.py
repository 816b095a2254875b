"""Similarity transforms and landmark-derived alignment rectangles.

All matrices are float64 numpy arrays. A 2x3 matrix ``M`` maps a point
``p`` to ``M[:, :2] @ p + M[:, 2]``. Crop transforms are always produced as
a pair from one estimation call:

    M_o2c  original image -> crop
    M_c2o  crop -> original image (exact inverse of M_o2c)
"""

from __future__ import annotations

import math
from typing import Tuple

import numpy as np

from livetalk.errors import GeometryError, InputError

# 106-point indices of the eye corners/lids and the lip centre line.
LEFT_EYE_INDICES = (33, 35, 40, 39)
RIGHT_EYE_INDICES = (87, 89, 94, 93)
UPPER_LIP_INDEX = 52
LOWER_LIP_INDEX = 61

_SINGULAR_EPS = 1e-6


def _as_points(pts) -> np.ndarray:
    arr = np.asarray(pts, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 2:
        arr = arr.reshape(-1, 2)
    return arr


def _as_affine(M) -> np.ndarray:
    arr = np.asarray(M, dtype=np.float64)
    if arr.shape == (3, 3):
        arr = arr[:2]
    if arr.shape != (2, 3):
        raise GeometryError(f"Affine matrix must be 2x3, got {arr.shape}")
    return arr


def transform_points(pts, M) -> np.ndarray:
    """Apply a 2x3 affine matrix to ``(N, 2)`` points."""
    pts = _as_points(pts)
    M = _as_affine(M)
    return pts @ M[:, :2].T + M[:, 2]


def to_homogeneous(M) -> np.ndarray:
    """Lift a 2x3 affine matrix to 3x3."""
    M = _as_affine(M)
    return np.vstack([M, [0.0, 0.0, 1.0]])


def invert_3x3(M) -> np.ndarray:
    """Invert a 3x3 matrix.

    Raises:
        GeometryError: If the matrix is singular.
    """
    M = np.asarray(M, dtype=np.float64)
    if M.shape != (3, 3):
        raise GeometryError(f"Matrix must be 3x3, got {M.shape}")
    if abs(np.linalg.det(M)) < _SINGULAR_EPS:
        raise GeometryError("Matrix is singular and cannot be inverted")
    return np.linalg.inv(M)


def invert_affine(M) -> np.ndarray:
    """Invert a 2x3 affine matrix through its homogeneous form."""
    return invert_3x3(to_homogeneous(M))[:2]


def parse_pt2_from_pt106(pts, use_lip: bool = True) -> np.ndarray:
    """Two reference points from 106 landmarks.

    With ``use_lip`` the points are (eye centre, lip centre), otherwise
    (left eye, right eye).
    """
    pts = _as_points(pts)
    if len(pts) < 106:
        raise InputError(f"Expected at least 106 landmarks, got {len(pts)}")
    left_eye = pts[list(LEFT_EYE_INDICES)].mean(axis=0)
    right_eye = pts[list(RIGHT_EYE_INDICES)].mean(axis=0)
    if use_lip:
        center_eye = (left_eye + right_eye) / 2
        center_lip = (pts[UPPER_LIP_INDEX] + pts[LOWER_LIP_INDEX]) / 2
        return np.stack([center_eye, center_lip])
    return np.stack([left_eye, right_eye])


def parse_pt2_from_ptx(pts, use_lip: bool = True) -> np.ndarray:
    """Reference points whose difference points "down" the face.

    The eye-to-eye vector is rotated by 90 degrees when lips are not used,
    so both variants yield a vertical axis.
    """
    pt2 = parse_pt2_from_pt106(pts, use_lip)
    if not use_lip:
        v = pt2[1] - pt2[0]
        pt2[1] = (pt2[0, 0] - v[1], pt2[0, 1] + v[0])
    return pt2


def parse_rect_from_landmark(
    pts,
    scale: float = 1.5,
    need_square: bool = True,
    vx_ratio: float = 0.0,
    vy_ratio: float = 0.0,
    use_lip: bool = True,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Rotated rectangle enclosing the landmarks.

    Args:
        pts: Landmarks (N, 2) in image pixels, N >= 106.
        scale: Multiplier applied to the rectangle size.
        need_square: Square the rectangle to its longer side.
        vx_ratio: Horizontal centre shift as a fraction of the size.
        vy_ratio: Vertical centre shift as a fraction of the size.
        use_lip: Use eye-centre to lip-centre as the vertical axis.

    Returns:
        (center (2,), size (2,), angle in radians).
    """
    pts = _as_points(pts)
    pt2 = parse_pt2_from_ptx(pts, use_lip)

    uy = pt2[1] - pt2[0]
    length = float(np.linalg.norm(uy))
    if length <= 1e-3:
        uy = np.array([0.0, 1.0])
    else:
        uy = uy / length
    ux = np.array([uy[1], -uy[0]])

    angle = math.acos(float(np.clip(ux[0], -1.0, 1.0)))
    if ux[1] < 0:
        angle = -angle

    # Landmarks in the face-aligned frame
    M = np.stack([ux, uy])
    center0 = pts.mean(axis=0)
    rpts = (pts - center0) @ M.T
    lt = rpts.min(axis=0)
    rb = rpts.max(axis=0)
    center1 = (lt + rb) / 2

    size = rb - lt
    if need_square:
        size = np.full(2, size.max())
    size = size * scale

    center = center0 + ux * center1[0] + uy * center1[1]
    center = center + ux * (vx_ratio * size[0]) + uy * (vy_ratio * size[1])
    return center, size, angle


def estimate_similarity_transform(
    pts,
    dsize: int,
    scale: float = 1.5,
    vx_ratio: float = 0.0,
    vy_ratio: float = 0.0,
    rotate: bool = True,
    use_lip: bool = True,
) -> Tuple[np.ndarray, np.ndarray]:
    """Estimate the crop transform pair for a ``dsize`` x ``dsize`` crop.

    Returns:
        (M_o2c, M_c2o): original->crop and crop->original, both 2x3.
    """
    center, size, angle = parse_rect_from_landmark(
        pts, scale, True, vx_ratio, vy_ratio, use_lip
    )
    if size[0] <= 0:
        raise GeometryError("Landmarks collapse to a zero sized rectangle")

    s = dsize / size[0]
    tcx = tcy = dsize / 2.0
    cx, cy = center

    if rotate:
        c, sn = math.cos(angle), math.sin(angle)
        m_o2c = np.array([
            [s * c, s * sn, tcx - s * (c * cx + sn * cy)],
            [-s * sn, s * c, tcy - s * (-sn * cx + c * cy)],
        ])
    else:
        m_o2c = np.array([
            [s, 0.0, tcx - s * cx],
            [0.0, s, tcy - s * cy],
        ])

    m_c2o = invert_3x3(to_homogeneous(m_o2c))[:2]
    return m_o2c, m_c2o


def face_align(
    center, output_size: int, scale: float, rotation_deg: float = 0.0
) -> np.ndarray:
    """Alignment matrix that scales/rotates around *center* into a square crop.

    The centre lands on the middle of an ``output_size`` crop.
    """
    cx, cy = float(center[0]), float(center[1])
    rot = math.radians(rotation_deg)
    half = output_size / 2.0
    m00 = scale * math.cos(rot)
    m01 = -scale * math.sin(rot)
    m10 = scale * math.sin(rot)
    m11 = scale * math.cos(rot)
    return np.array([
        [m00, m01, half - cx * m00 - cy * m01],
        [m10, m11, half - cx * m10 - cy * m11],
    ])


def expand_bounding_box(bbox, factor: float) -> Tuple[int, int, int, int]:
    """Square integer box around the centre of *bbox*.

    ``(xc - s, yc - s, xc + s, yc + s)`` with ``xc = int((x1 + x2) / 2)``
    and ``s = int(max(w, h) / 2 * factor)``.

    Raises:
        GeometryError: If *bbox* has zero or negative width or height.
    """
    x1, y1, x2, y2 = (float(v) for v in bbox)
    w, h = x2 - x1, y2 - y1
    if w <= 0 or h <= 0:
        raise GeometryError(f"Degenerate bounding box: {tuple(bbox)}")
    xc = int((x1 + x2) / 2)
    yc = int((y1 + y2) / 2)
    s = int(max(w, h) / 2 * factor)
    return xc - s, yc - s, xc + s, yc + s


__all__ = [
    "transform_points",
    "to_homogeneous",
    "invert_3x3",
    "invert_affine",
    "parse_pt2_from_pt106",
    "parse_pt2_from_ptx",
    "parse_rect_from_landmark",
    "estimate_similarity_transform",
    "face_align",
    "expand_bounding_box",
]
