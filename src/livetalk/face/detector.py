"""SCRFD (det_10g) pre- and post-processing.

The detector sees a 512x512 letterboxed canvas and emits, for each of the
three FPN strides (8, 16, 32), a score, a distance box and five keypoint
offsets per anchor. Two anchors sit on every grid cell.

Output order: ``[scores x3, bbox x3, kps x3]``.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from livetalk.errors import InputError
from livetalk.face.types import DetectionCandidate
from livetalk.frame import frame_to_tensor

INPUT_SIZE = 512
STRIDES = (8, 16, 32)
NUM_ANCHORS = 2
DETECTION_THRESHOLD = 0.5
NMS_THRESHOLD = 0.4

# (x - 127.5) / 128
INPUT_SCALE = 1.0 / 128.0
INPUT_OFFSET = -127.5 / 128.0


def letterbox(frame: np.ndarray, input_size: int = INPUT_SIZE) -> Tuple[np.ndarray, float]:
    """Resize the long side to *input_size* and paste top-left on a black square.

    Returns:
        (canvas, det_scale) where ``det_scale = new_h / h`` maps original
        pixels onto the canvas.
    """
    height, width = frame.shape[:2]
    im_ratio = height / width
    if im_ratio > 1:
        new_height = input_size
        new_width = int(np.floor(new_height / im_ratio))
    else:
        new_width = input_size
        new_height = int(np.floor(new_width * im_ratio))
    new_width = max(new_width, 1)
    new_height = max(new_height, 1)

    det_scale = new_height / height
    resized = cv2.resize(frame, (new_width, new_height), interpolation=cv2.INTER_LINEAR)
    canvas = np.zeros((input_size, input_size, 3), dtype=np.uint8)
    canvas[:new_height, :new_width] = resized
    return canvas, det_scale


def preprocess(canvas: np.ndarray) -> np.ndarray:
    """Letterboxed canvas -> (1, 3, 512, 512) detector tensor."""
    return frame_to_tensor(canvas, INPUT_SCALE, INPUT_OFFSET)


class AnchorCache:
    """Anchor centres per ``(height, width, stride)``.

    Holds at most ``max_entries`` grids. The detector clears it after each
    frame.
    """

    def __init__(self, max_entries: int = 100, num_anchors: int = NUM_ANCHORS) -> None:
        self.max_entries = max_entries
        self.num_anchors = num_anchors
        self._cache: Dict[Tuple[int, int, int], np.ndarray] = {}

    def get(self, height: int, width: int, stride: int) -> np.ndarray:
        """(height * width * num_anchors, 2) anchor centres, row-major."""
        key = (height, width, stride)
        if key in self._cache:
            return self._cache[key]

        centers = np.stack(np.mgrid[:height, :width][::-1], axis=-1).astype(np.float32)
        centers = (centers * stride).reshape((-1, 2))
        if self.num_anchors > 1:
            centers = np.stack([centers] * self.num_anchors, axis=1).reshape((-1, 2))

        if len(self._cache) < self.max_entries:
            self._cache[key] = centers
        return centers

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


def decode_detections(
    outputs: Sequence[np.ndarray],
    det_scale: float,
    input_size: int = INPUT_SIZE,
    threshold: float = DETECTION_THRESHOLD,
    strides: Sequence[int] = STRIDES,
    anchors: Optional[AnchorCache] = None,
) -> List[DetectionCandidate]:
    """Decode raw detector outputs into candidates sorted by score (descending).

    Box and keypoint predictions are distances in stride units. Geometry is
    mapped back to original pixels with ``1 / det_scale``.
    """
    fmc = len(strides)
    if len(outputs) < 3 * fmc:
        raise InputError(f"Detector produced {len(outputs)} outputs, expected {3 * fmc}")
    if anchors is None:
        anchors = AnchorCache()

    boxes, scores, kpss = [], [], []
    for idx, stride in enumerate(strides):
        score = np.asarray(outputs[idx], dtype=np.float32).reshape(-1)
        bbox_preds = np.asarray(outputs[idx + fmc], dtype=np.float32).reshape(-1, 4) * stride
        kps_preds = np.asarray(outputs[idx + fmc * 2], dtype=np.float32).reshape(-1, 10) * stride

        height = width = input_size // stride
        centers = anchors.get(height, width, stride)
        if len(centers) != len(score):
            raise InputError(
                f"Stride {stride}: {len(score)} scores for {len(centers)} anchors"
            )

        keep = np.where(score >= threshold)[0]
        if len(keep) == 0:
            continue
        c = centers[keep]
        d = bbox_preds[keep]
        boxes.append(np.stack([
            c[:, 0] - d[:, 0],
            c[:, 1] - d[:, 1],
            c[:, 0] + d[:, 2],
            c[:, 1] + d[:, 3],
        ], axis=-1))
        kpss.append(kps_preds[keep].reshape(-1, 5, 2) + c[:, np.newaxis, :])
        scores.append(score[keep])

    if not scores:
        return []

    inv_scale = 1.0 / det_scale
    all_boxes = np.vstack(boxes) * inv_scale
    all_kps = np.vstack(kpss) * inv_scale
    all_scores = np.concatenate(scores)

    # Stable so equal scores keep their anchor order
    order = np.argsort(-all_scores, kind="stable")
    return [
        DetectionCandidate(
            bbox=all_boxes[i].astype(np.float32),
            score=float(all_scores[i]),
            kps=all_kps[i].astype(np.float32),
        )
        for i in order
    ]


def iou(a: np.ndarray, b: np.ndarray) -> float:
    """Intersection over union of two (x1, y1, x2, y2) boxes.

    Boxes that only touch or do not overlap give 0.
    """
    ix1 = max(a[0], b[0])
    iy1 = max(a[1], b[1])
    ix2 = min(a[2], b[2])
    iy2 = min(a[3], b[3])
    if ix1 >= ix2 or iy1 >= iy2:
        return 0.0
    inter = (ix2 - ix1) * (iy2 - iy1)
    area_a = (a[2] - a[0]) * (a[3] - a[1])
    area_b = (b[2] - b[0]) * (b[3] - b[1])
    union = area_a + area_b - inter
    if union <= 0:
        return 0.0
    return float(inter / union)


def nms(
    candidates: List[DetectionCandidate], threshold: float = NMS_THRESHOLD
) -> List[DetectionCandidate]:
    """Greedy NMS over score-sorted candidates.

    A candidate is suppressed when its IoU with an already kept one is
    ``>= threshold``.
    """
    kept: List[DetectionCandidate] = []
    suppressed = [False] * len(candidates)
    for i, cand in enumerate(candidates):
        if suppressed[i]:
            continue
        kept.append(cand)
        for j in range(i + 1, len(candidates)):
            if not suppressed[j] and iou(cand.bbox, candidates[j].bbox) >= threshold:
                suppressed[j] = True
    return kept


__all__ = [
    "INPUT_SIZE",
    "STRIDES",
    "DETECTION_THRESHOLD",
    "NMS_THRESHOLD",
    "letterbox",
    "preprocess",
    "AnchorCache",
    "decode_detections",
    "iou",
    "nms",
]
