"""Tests for geometry value types and box algorithms."""

from __future__ import annotations

import math

import numpy as np
import pytest

from faceapix.ml.geometry import (
    FaceDetection,
    Point,
    Rect,
    center_of,
    decode_anchor_boxes,
    decode_grid_anchors,
    finite_boxes_mask,
    iou,
    nms_indices,
    non_max_suppression,
    regress_boxes,
    square_boxes,
)

# ---------------------------------------------------------------------------
# Point / Rect
# ---------------------------------------------------------------------------


class TestPoint:
    def test_arithmetic(self) -> None:
        p = Point(1.0, 2.0)
        assert p + Point(2.0, 3.0) == Point(3.0, 5.0)
        assert p - 1 == Point(0.0, 1.0)
        assert p * 2 == Point(2.0, 4.0)
        assert Point(4.0, 6.0) / Point(2.0, 3.0) == Point(2.0, 2.0)

    def test_magnitude_and_floor(self) -> None:
        assert Point(3.0, 4.0).magnitude() == 5.0
        assert Point(1.7, -0.2).floor() == Point(1, -1)

    def test_center_of(self) -> None:
        assert center_of([Point(0, 0), Point(2, 0), Point(1, 3)]) == Point(1.0, 1.0)

    def test_center_of_empty_raises(self) -> None:
        with pytest.raises(ValueError, match="at least one point"):
            center_of([])


class TestRect:
    def test_negative_size_rejected(self) -> None:
        with pytest.raises(ValueError, match=">= 0"):
            Rect(0, 0, -1, 5)

    def test_accessors(self) -> None:
        r = Rect(10, 20, 30, 40)
        assert (r.left, r.top, r.right, r.bottom) == (10, 20, 40, 60)
        assert r.area == 1200
        assert r.center == Point(25, 40)
        assert r.as_xyxy() == (10, 20, 40, 60)
        assert Rect.from_corners(10, 20, 40, 60) == r

    def test_is_empty(self) -> None:
        assert Rect(5, 5, 0, 10).is_empty
        assert not Rect(5, 5, 1, 1).is_empty

    def test_pad_grows_evenly(self) -> None:
        assert Rect(10, 10, 20, 40).pad(0.5) == Rect(5, 0, 30, 60)

    def test_to_square_keeps_center(self) -> None:
        square = Rect(0, 10, 40, 20).to_square()
        assert square == Rect(0, 0, 40, 40)
        assert square.center == Rect(0, 10, 40, 20).center

    def test_clip(self) -> None:
        assert Rect(-5, -5, 20, 20).clip(10, 8) == Rect(0, 0, 10, 8)
        assert Rect(50, 50, 10, 10).clip(10, 10) == Rect(10, 10, 0, 0)

    def test_scale_and_shift(self) -> None:
        assert Rect(1, 2, 3, 4).scale(2) == Rect(2, 4, 6, 8)
        assert Rect(1, 2, 3, 4).scale(2, 0.5) == Rect(2, 1, 6, 2)
        assert Rect(1, 2, 3, 4).shift(1, -2) == Rect(2, 0, 3, 4)


class TestFaceDetection:
    def test_score_out_of_range_rejected(self) -> None:
        with pytest.raises(ValueError, match=r"\[0, 1\]"):
            FaceDetection(Rect(0, 0, 1, 1), 1.5, 10, 10)

    def test_relative_rect(self) -> None:
        detection = FaceDetection(Rect(20, 10, 40, 20), 0.9, 200, 100)
        rel = detection.relative_rect
        assert (rel.x, rel.y, rel.width, rel.height) == pytest.approx((0.1, 0.1, 0.2, 0.2))

    def test_with_rect_keeps_score(self) -> None:
        detection = FaceDetection(Rect(0, 0, 4, 4), 0.7, 10, 10)
        moved = detection.with_rect(Rect(1, 1, 2, 2))
        assert moved.score == 0.7
        assert moved.rect == Rect(1, 1, 2, 2)


# ---------------------------------------------------------------------------
# IoU / NMS
# ---------------------------------------------------------------------------


class TestIou:
    def test_identical_boxes(self) -> None:
        assert iou(Rect(0, 0, 10, 10), Rect(0, 0, 10, 10)) == 1.0

    def test_disjoint_and_touching(self) -> None:
        assert iou(Rect(0, 0, 10, 10), Rect(20, 20, 5, 5)) == 0.0
        assert iou(Rect(0, 0, 10, 10), Rect(10, 0, 10, 10)) == 0.0

    def test_half_overlap(self) -> None:
        assert iou(Rect(0, 0, 10, 10), Rect(0, 0, 10, 5)) == pytest.approx(0.5)

    def test_use_min_divides_by_smaller_area(self) -> None:
        assert iou(Rect(0, 0, 10, 10), Rect(0, 0, 10, 5), use_min=True) == pytest.approx(1.0)


class TestNms:
    def test_keeps_best_of_overlapping_pair(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [1, 1, 11, 11], [50, 50, 60, 60]], dtype=np.float32)
        scores = np.array([0.6, 0.9, 0.8], dtype=np.float32)
        assert nms_indices(boxes, scores, 0.5) == [1, 2]

    def test_result_independent_of_input_order(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [1, 1, 11, 11], [50, 50, 60, 60], [52, 52, 61, 61]], dtype=np.float32)
        scores = np.array([0.6, 0.9, 0.8, 0.7], dtype=np.float32)
        perm = np.array([3, 1, 0, 2])
        kept = {tuple(boxes[i]) for i in nms_indices(boxes, scores, 0.3)}
        kept_permuted = {tuple(boxes[perm][i]) for i in nms_indices(boxes[perm], scores[perm], 0.3)}
        assert kept == kept_permuted

    def test_ties_keep_input_order(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [0, 0, 10, 10]], dtype=np.float32)
        scores = np.array([0.5, 0.5], dtype=np.float32)
        assert nms_indices(boxes, scores, 0.5) == [0]

    def test_overlap_equal_to_threshold_is_kept(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [0, 0, 10, 5]], dtype=np.float32)
        scores = np.array([0.9, 0.8], dtype=np.float32)
        assert nms_indices(boxes, scores, 0.5) == [0, 1]
        assert nms_indices(boxes, scores, 0.4) == [0]

    def test_empty_input(self) -> None:
        assert nms_indices(np.zeros((0, 4)), np.zeros(0), 0.5) == []

    def test_no_kept_pair_overlaps_above_threshold(self) -> None:
        rng = np.random.default_rng(7)
        corners = rng.uniform(0, 80, size=(60, 2))
        sizes = rng.uniform(5, 30, size=(60, 2))
        boxes = np.concatenate([corners, corners + sizes], axis=1)
        scores = rng.uniform(0, 1, size=60)
        kept = nms_indices(boxes, scores, 0.3)
        rects = [Rect.from_corners(*boxes[i]) for i in kept]
        for i, a in enumerate(rects):
            for b in rects[i + 1 :]:
                assert iou(a, b) <= 0.3 + 1e-9
        assert [scores[i] for i in kept] == sorted((scores[i] for i in kept), reverse=True)

    def test_non_max_suppression_on_detections(self) -> None:
        detections = [
            FaceDetection(Rect(0, 0, 10, 10), 0.6, 100, 100),
            FaceDetection(Rect(1, 1, 10, 10), 0.9, 100, 100),
        ]
        assert non_max_suppression(detections, 0.5) == [detections[1]]
        assert non_max_suppression([], 0.5) == []


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class TestDecodeAnchorBoxes:
    def test_zero_encoding_returns_anchor(self) -> None:
        anchors = np.array([[0.5, 0.4, 0.2, 0.1]], dtype=np.float32)
        boxes = decode_anchor_boxes(np.zeros((1, 4)), anchors)
        np.testing.assert_allclose(boxes, [[0.35, 0.4, 0.45, 0.6]], atol=1e-6)

    def test_scale_factors_applied(self) -> None:
        anchors = np.array([[0.5, 0.5, 0.2, 0.2]], dtype=np.float32)
        encodings = np.array([[10.0, 0.0, 5.0 * math.log(2.0), 0.0]], dtype=np.float32)
        boxes = decode_anchor_boxes(encodings, anchors)
        # ty=10 moves the center by one anchor height, th doubles the height
        np.testing.assert_allclose(boxes, [[0.4, 0.5, 0.6, 0.9]], atol=1e-5)

    def test_huge_scale_stays_finite(self) -> None:
        anchors = np.array([[0.5, 0.5, 0.2, 0.2]], dtype=np.float32)
        boxes = decode_anchor_boxes(np.array([[0.0, 0.0, 1e6, 1e6]]), anchors)
        assert np.all(np.isfinite(boxes))

    def test_count_mismatch_raises(self) -> None:
        with pytest.raises(ValueError, match="encodings"):
            decode_anchor_boxes(np.zeros((2, 4)), np.zeros((3, 4)))


class TestDecodeGridAnchors:
    def test_zero_predictions(self) -> None:
        grid = np.zeros((2, 2, 1, 6), dtype=np.float32)
        boxes, scores = decode_grid_anchors(grid, [Point(1.0, 1.0)])
        assert boxes.shape == (4, 4)
        np.testing.assert_allclose(scores, 0.5)
        # cell (row 0, col 1): center (0.75, 0.25), one cell wide
        np.testing.assert_allclose(boxes[1], [0.5, 0.0, 1.0, 0.5], atol=1e-6)

    def test_class_scores_used_with_several_classes(self) -> None:
        grid = np.zeros((1, 1, 1, 7), dtype=np.float32)
        _, scores = decode_grid_anchors(grid, [Point(1.0, 1.0)])
        np.testing.assert_allclose(scores, [0.25])

    def test_anchor_count_mismatch_raises(self) -> None:
        with pytest.raises(ValueError, match="anchors per cell"):
            decode_grid_anchors(np.zeros((1, 1, 2, 6)), [Point(1.0, 1.0)])


class TestBoxRefinement:
    def test_regress_boxes(self) -> None:
        refined = regress_boxes(np.array([[10, 10, 30, 20]]), np.array([[0.1, -0.5, 0.0, 1.0]]))
        np.testing.assert_allclose(refined, [[12, 5, 30, 30]])

    def test_square_boxes(self) -> None:
        np.testing.assert_allclose(square_boxes(np.array([[0, 10, 40, 30]])), [[0, 0, 40, 40]])

    def test_finite_mask(self) -> None:
        boxes = np.array([[0, 0, 1, 1], [0, 0, np.nan, 1], [5, 5, 5, 6], [0, 0, np.inf, 1]])
        assert finite_boxes_mask(boxes).tolist() == [True, False, False, False]
