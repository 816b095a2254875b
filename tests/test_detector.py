"""Tests for SCRFD pre/post-processing in livetalk.face.detector."""

import numpy as np
import pytest

from livetalk.errors import InputError
from livetalk.face.detector import (
    AnchorCache,
    decode_detections,
    iou,
    letterbox,
    nms,
    preprocess,
)
from livetalk.face.types import DetectionCandidate

from helpers import create_frame, detector_outputs


def candidate(box, score):
    return DetectionCandidate(np.array(box, dtype=np.float32), score, np.zeros((5, 2), np.float32))


class TestLetterbox:
    def test_landscape(self):
        canvas, det_scale = letterbox(create_frame(1024, 512, value=200))
        assert canvas.shape == (512, 512, 3)
        assert det_scale == pytest.approx(0.5)
        assert canvas[:256].min() == 200
        assert canvas[256:].max() == 0

    def test_portrait(self):
        canvas, det_scale = letterbox(create_frame(256, 1024, value=50))
        assert det_scale == pytest.approx(0.5)
        assert canvas[:, :128].min() == 50
        assert canvas[:, 128:].max() == 0

    def test_preprocess_normalises(self):
        tensor = preprocess(create_frame(512, 512, value=255))
        assert tensor.shape == (1, 3, 512, 512)
        assert tensor.max() == pytest.approx((255 - 127.5) / 128)


class TestAnchorCache:
    def test_anchor_layout(self):
        cache = AnchorCache()
        centers = cache.get(2, 3, 8)
        assert centers.shape == (12, 2)
        # Two anchors per cell, row-major (x varies fastest)
        np.testing.assert_array_equal(centers[:6], [[0, 0], [0, 0], [8, 0], [8, 0], [16, 0], [16, 0]])
        np.testing.assert_array_equal(centers[6], [0, 8])

    def test_cached_and_bounded(self):
        cache = AnchorCache(max_entries=1)
        a = cache.get(4, 4, 8)
        assert cache.get(4, 4, 8) is a
        cache.get(2, 2, 16)
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0


class TestDecode:
    def test_recovers_box_and_keypoints(self):
        outputs = detector_outputs([(100, 120, 220, 260)], [0.9])
        (cand,) = decode_detections(outputs, det_scale=1.0)
        np.testing.assert_allclose(cand.bbox, [100, 120, 220, 260], atol=1e-3)
        assert cand.score == pytest.approx(0.9)
        np.testing.assert_allclose(cand.kps[0], [100 + 0.3 * 120, 120 + 0.4 * 140], atol=1e-3)

    def test_scales_back_to_original(self):
        outputs = detector_outputs([(100, 100, 200, 200)], [0.9])
        (cand,) = decode_detections(outputs, det_scale=0.5)
        np.testing.assert_allclose(cand.bbox, [200, 200, 400, 400], atol=1e-3)

    def test_threshold_and_order(self):
        outputs = detector_outputs(
            [(0, 0, 64, 64), (200, 200, 300, 300), (400, 400, 480, 480)], [0.6, 0.4, 0.95]
        )
        cands = decode_detections(outputs, det_scale=1.0)
        assert [round(c.score, 2) for c in cands] == [0.95, 0.6]

    def test_nothing_above_threshold(self):
        assert decode_detections(detector_outputs([(0, 0, 64, 64)], [0.1]), 1.0) == []

    def test_too_few_outputs(self):
        with pytest.raises(InputError):
            decode_detections(detector_outputs([], [])[:6], 1.0)


class TestNms:
    def test_iou(self):
        a = np.array([0, 0, 10, 10])
        assert iou(a, a) == pytest.approx(1.0)
        assert iou(a, np.array([5, 0, 15, 10])) == pytest.approx(50 / 150)
        assert iou(a, np.array([10, 0, 20, 10])) == 0.0

    def test_suppresses_overlaps(self):
        cands = [
            candidate((0, 0, 100, 100), 0.9),
            candidate((5, 5, 105, 105), 0.8),
            candidate((300, 300, 400, 400), 0.7),
        ]
        kept = nms(cands)
        assert [c.score for c in kept] == [0.9, 0.7]

    def test_threshold_is_inclusive(self):
        a = candidate((0, 0, 10, 10), 0.9)
        b = candidate((0, 0, 10, 4), 0.8)
        assert len(nms([a, b], threshold=0.4)) == 1
        assert len(nms([a, b], threshold=0.41)) == 2

    def test_empty(self):
        assert nms([]) == []
