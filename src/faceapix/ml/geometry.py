"""Geometry value types and the box algorithms shared by all detectors.

Box arrays are float32 ``(N, 4)`` in ``(x_min, y_min, x_max, y_max)`` order
unless noted otherwise. Everything here is pure: no state, no buffers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

# Upper bound for log-space scale regression, keeps exp() finite on garbage outputs.
MAX_LOG_SCALE = math.log(1000.0 / 16.0)

SSD_SCALE_FACTORS: tuple[float, float, float, float] = (10.0, 10.0, 5.0, 5.0)


@dataclass(frozen=True)
class Point:
    """Immutable 2D coordinate."""

    x: float
    y: float

    def __add__(self, other: Point | float) -> Point:
        if isinstance(other, Point):
            return Point(self.x + other.x, self.y + other.y)
        return Point(self.x + other, self.y + other)

    def __sub__(self, other: Point | float) -> Point:
        if isinstance(other, Point):
            return Point(self.x - other.x, self.y - other.y)
        return Point(self.x - other, self.y - other)

    def __mul__(self, other: Point | float) -> Point:
        if isinstance(other, Point):
            return Point(self.x * other.x, self.y * other.y)
        return Point(self.x * other, self.y * other)

    def __truediv__(self, other: Point | float) -> Point:
        if isinstance(other, Point):
            return Point(self.x / other.x, self.y / other.y)
        return Point(self.x / other, self.y / other)

    def magnitude(self) -> float:
        return math.hypot(self.x, self.y)

    def floor(self) -> Point:
        return Point(math.floor(self.x), math.floor(self.y))


def center_of(points: Sequence[Point]) -> Point:
    """Mean position of a non-empty set of points."""
    if not points:
        raise ValueError("center_of() needs at least one point")
    return Point(
        sum(p.x for p in points) / len(points),
        sum(p.y for p in points) / len(points),
    )


@dataclass(frozen=True)
class Rect:
    """Immutable axis-aligned box. Width and height are never negative."""

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Rect width and height must be >= 0, got {self.width}x{self.height}")

    @classmethod
    def from_corners(cls, left: float, top: float, right: float, bottom: float) -> Rect:
        return cls(left, top, right - left, bottom - top)

    @property
    def left(self) -> float:
        return self.x

    @property
    def top(self) -> float:
        return self.y

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def top_left(self) -> Point:
        return Point(self.x, self.y)

    @property
    def bottom_right(self) -> Point:
        return Point(self.right, self.bottom)

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2, self.y + self.height / 2)

    @property
    def is_empty(self) -> bool:
        return not (self.width > 0 and self.height > 0)

    def shift(self, dx: float, dy: float) -> Rect:
        return Rect(self.x + dx, self.y + dy, self.width, self.height)

    def scale(self, sx: float, sy: float | None = None) -> Rect:
        sy = sx if sy is None else sy
        return Rect(self.x * sx, self.y * sy, self.width * sx, self.height * sy)

    def pad(self, factor: float) -> Rect:
        """Grow the box by ``factor`` of its size, split evenly on both sides."""
        dw = self.width * factor
        dh = self.height * factor
        return Rect(self.x - dw / 2, self.y - dh / 2, self.width + dw, self.height + dh)

    def to_square(self) -> Rect:
        side = max(self.width, self.height)
        return Rect(
            self.x + (self.width - side) / 2,
            self.y + (self.height - side) / 2,
            side,
            side,
        )

    def clip(self, width: float, height: float) -> Rect:
        """Intersect with the image area ``[0, width] x [0, height]``."""
        left = min(max(self.left, 0.0), width)
        top = min(max(self.top, 0.0), height)
        right = min(max(self.right, left), width)
        bottom = min(max(self.bottom, top), height)
        return Rect.from_corners(left, top, right, bottom)

    def round(self) -> Rect:
        return Rect(round(self.x), round(self.y), round(self.width), round(self.height))

    def as_xyxy(self) -> tuple[float, float, float, float]:
        return (self.left, self.top, self.right, self.bottom)


@dataclass(frozen=True)
class FaceDetection:
    """One detected face in absolute image coordinates."""

    rect: Rect
    score: float
    image_width: int
    image_height: int

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Detection score must be in [0, 1], got {self.score}")

    @property
    def relative_rect(self) -> Rect:
        return self.rect.scale(1.0 / self.image_width, 1.0 / self.image_height)

    def with_rect(self, rect: Rect) -> FaceDetection:
        return FaceDetection(rect, self.score, self.image_width, self.image_height)


# ---------------------------------------------------------------------------
# Overlap and suppression
# ---------------------------------------------------------------------------


def iou(a: Rect, b: Rect, *, use_min: bool = False) -> float:
    """Intersection over union of two boxes; 0 when they do not overlap.

    With ``use_min`` the intersection is divided by the smaller area instead.
    """
    inter_w = min(a.right, b.right) - max(a.left, b.left)
    inter_h = min(a.bottom, b.bottom) - max(a.top, b.top)
    if inter_w <= 0 or inter_h <= 0:
        return 0.0
    inter = inter_w * inter_h
    denom = min(a.area, b.area) if use_min else a.area + b.area - inter
    if denom <= 0:
        return 0.0
    return inter / denom


def nms_indices(
    boxes: NDArray[np.floating],
    scores: NDArray[np.floating],
    iou_threshold: float,
    *,
    use_min: bool = False,
) -> list[int]:
    """Greedy non-maximum suppression over ``(x_min, y_min, x_max, y_max)`` boxes.

    Candidates are visited by descending score; ties keep their input order.
    A candidate is dropped when its overlap with a kept box is strictly
    greater than ``iou_threshold``.

    Returns:
        Indices into ``boxes`` of the kept candidates, best first.
    """
    boxes = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    if boxes.shape[0] == 0:
        return []

    x1, y1, x2, y2 = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
    areas = np.maximum(x2 - x1, 0.0) * np.maximum(y2 - y1, 0.0)
    order = np.argsort(-scores, kind="stable")

    keep: list[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)
        rest = order[1:]

        inter_w = np.maximum(0.0, np.minimum(x2[i], x2[rest]) - np.maximum(x1[i], x1[rest]))
        inter_h = np.maximum(0.0, np.minimum(y2[i], y2[rest]) - np.maximum(y1[i], y1[rest]))
        inter = inter_w * inter_h
        denom = np.minimum(areas[i], areas[rest]) if use_min else areas[i] + areas[rest] - inter
        overlap = np.divide(inter, denom, out=np.zeros_like(inter), where=denom > 0)

        order = rest[overlap <= iou_threshold]

    return keep


def non_max_suppression(
    detections: Sequence[FaceDetection],
    iou_threshold: float,
    *,
    use_min: bool = False,
) -> list[FaceDetection]:
    """Apply :func:`nms_indices` to detections, best first."""
    if not detections:
        return []
    boxes = np.array([d.rect.as_xyxy() for d in detections], dtype=np.float64)
    scores = np.array([d.score for d in detections], dtype=np.float64)
    return [detections[i] for i in nms_indices(boxes, scores, iou_threshold, use_min=use_min)]


# ---------------------------------------------------------------------------
# Box decoding
# ---------------------------------------------------------------------------


def sigmoid(x: NDArray[np.floating]) -> NDArray[np.float32]:
    x = np.asarray(x, dtype=np.float32)
    return (1.0 / (1.0 + np.exp(-np.clip(x, -80.0, 80.0)))).astype(np.float32)


def softmax(x: NDArray[np.floating], axis: int = -1) -> NDArray[np.float32]:
    x = np.asarray(x, dtype=np.float32)
    shifted = x - np.max(x, axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return (exp / np.sum(exp, axis=axis, keepdims=True)).astype(np.float32)


def decode_anchor_boxes(
    encodings: NDArray[np.floating],
    anchors: NDArray[np.floating],
    scale_factors: tuple[float, float, float, float] = SSD_SCALE_FACTORS,
) -> NDArray[np.float32]:
    """Apply log-space box regression to anchor templates.

    Args:
        encodings: ``(N, 4)`` predicted ``(ty, tx, th, tw)`` offsets.
        anchors: ``(N, 4)`` anchors as ``(y_center, x_center, height, width)``.
        scale_factors: Divisors applied to ``(ty, tx, th, tw)`` before decoding.

    Returns:
        ``(N, 4)`` boxes in ``(x_min, y_min, x_max, y_max)`` order, in the
        anchors' coordinate frame.
    """
    encodings = np.asarray(encodings, dtype=np.float32).reshape(-1, 4)
    anchors = np.asarray(anchors, dtype=np.float32).reshape(-1, 4)
    if encodings.shape != anchors.shape:
        raise ValueError(f"{encodings.shape[0]} encodings for {anchors.shape[0]} anchors")

    sy, sx, sh, sw = scale_factors
    y_center = encodings[:, 0] / sy * anchors[:, 2] + anchors[:, 0]
    x_center = encodings[:, 1] / sx * anchors[:, 3] + anchors[:, 1]
    half_h = np.exp(np.minimum(encodings[:, 2] / sh, MAX_LOG_SCALE)) * anchors[:, 2] / 2
    half_w = np.exp(np.minimum(encodings[:, 3] / sw, MAX_LOG_SCALE)) * anchors[:, 3] / 2

    return np.stack(
        [x_center - half_w, y_center - half_h, x_center + half_w, y_center + half_h],
        axis=-1,
    ).astype(np.float32)


def decode_grid_anchors(
    grid: NDArray[np.floating],
    anchors: Sequence[Point],
) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
    """Decode a YOLO-style ``(rows, cols, num_anchors, 5 + num_classes)`` grid.

    Anchor sizes are expressed in grid cells. Each prediction is
    ``(tx, ty, tw, th, objectness, class logits...)``.

    Returns:
        ``(boxes, scores)`` where boxes are relative ``(x_min, y_min, x_max, y_max)``
        in ``[0, 1]`` input space, flattened in ``(row, col, anchor)`` order.
    """
    grid = np.asarray(grid, dtype=np.float32)
    rows, cols, num_anchors, depth = grid.shape
    if num_anchors != len(anchors):
        raise ValueError(f"Grid has {num_anchors} anchors per cell, expected {len(anchors)}")

    anchor_w = np.array([a.x for a in anchors], dtype=np.float32)
    anchor_h = np.array([a.y for a in anchors], dtype=np.float32)
    row_idx = np.arange(rows, dtype=np.float32)[:, None, None]
    col_idx = np.arange(cols, dtype=np.float32)[None, :, None]

    x_center = (col_idx + sigmoid(grid[..., 0])) / cols
    y_center = (row_idx + sigmoid(grid[..., 1])) / rows
    half_w = np.exp(np.minimum(grid[..., 2], MAX_LOG_SCALE)) * anchor_w / cols / 2
    half_h = np.exp(np.minimum(grid[..., 3], MAX_LOG_SCALE)) * anchor_h / rows / 2

    scores = sigmoid(grid[..., 4])
    if depth > 6:
        scores = scores * np.max(softmax(grid[..., 5:], axis=-1), axis=-1)

    boxes = np.stack(
        [x_center - half_w, y_center - half_h, x_center + half_w, y_center + half_h],
        axis=-1,
    )
    return boxes.reshape(-1, 4).astype(np.float32), scores.reshape(-1).astype(np.float32)


def regress_boxes(boxes: NDArray[np.floating], offsets: NDArray[np.floating]) -> NDArray[np.float32]:
    """Shift box edges by offsets expressed in units of the box size."""
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    offsets = np.asarray(offsets, dtype=np.float32).reshape(-1, 4)
    widths = boxes[:, 2] - boxes[:, 0]
    heights = boxes[:, 3] - boxes[:, 1]
    scale = np.stack([widths, heights, widths, heights], axis=-1)
    return (boxes + offsets * scale).astype(np.float32)


def square_boxes(boxes: NDArray[np.floating]) -> NDArray[np.float32]:
    """Grow each box to a square around its center."""
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    widths = boxes[:, 2] - boxes[:, 0]
    heights = boxes[:, 3] - boxes[:, 1]
    side = np.maximum(widths, heights)
    x1 = boxes[:, 0] + (widths - side) / 2
    y1 = boxes[:, 1] + (heights - side) / 2
    return np.stack([x1, y1, x1 + side, y1 + side], axis=-1).astype(np.float32)


def finite_boxes_mask(boxes: NDArray[np.floating]) -> NDArray[np.bool_]:
    """True for boxes with finite corners and positive extent."""
    boxes = np.asarray(boxes).reshape(-1, 4)
    finite = np.all(np.isfinite(boxes), axis=-1)
    positive = (boxes[:, 2] > boxes[:, 0]) & (boxes[:, 3] > boxes[:, 1])
    return finite & positive
