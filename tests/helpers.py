"""Test helpers: synthetic weights, test images, a recording runner and a fixed detector.

Networks are exercised with deterministic weights (zeros plus a few chosen
biases), so their outputs are known without the published weight files.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import numpy as np
from onnx import load_from_string, shape_inference

from faceapix.ml.face_detector import DetectOptions
from faceapix.ml.geometry import FaceDetection, Rect
from faceapix.ml.network import NetworkState

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from numpy.typing import ArrayLike, NDArray

    from faceapix.ml.weights import WeightLayout


def make_weights(layout: WeightLayout, overrides: Mapping[str, ArrayLike] | None = None) -> NDArray[np.float32]:
    """Flat float32 weights for ``layout``: zeros, except the named overrides."""
    overrides = overrides or {}
    chunks = []
    for name, shape in layout.entries:
        values = np.zeros(shape, dtype=np.float32)
        if name in overrides:
            values[...] = overrides[name]
        chunks.append(values.reshape(-1))
    return np.concatenate(chunks)


def landmark_template() -> NDArray[np.float32]:
    """136 fc1 biases: every point at the crop center, eyes and mouth at fixed spots."""
    points = np.full((68, 2), 0.5, dtype=np.float32)
    points[36:42] = (0.375, 0.375)
    points[42:48] = (0.625, 0.375)
    points[48:68] = (0.5, 0.75)
    return points.reshape(-1)


def spatial_sizes(model: bytes, op_type: str) -> list[int]:
    """Inferred output height of every ``op_type`` node of a square-input model, in graph order."""
    inferred = shape_inference.infer_shapes(load_from_string(model))
    heights = {
        info.name: info.type.tensor_type.shape.dim[2].dim_value
        for info in inferred.graph.value_info
        if len(info.type.tensor_type.shape.dim) == 4
    }
    return [heights[node.output[0]] for node in inferred.graph.node if node.op_type == op_type]


def gradient_image(height: int, width: int) -> NDArray[np.uint8]:
    """Deterministic RGB test image."""
    ys, xs = np.mgrid[0:height, 0:width]
    image = np.stack([xs * 255 // max(width - 1, 1), ys * 255 // max(height - 1, 1), (xs + ys) % 256], axis=-1)
    return image.astype(np.uint8)


class RecordingRunner:
    """Network runner that records calls and how many overlapped."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.feeds: list[str] = []
        self.shapes: list[tuple[int, ...]] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, func: Callable[..., object], *args: object) -> object:
        feeds = args[1]
        assert isinstance(feeds, dict)
        self.feeds.extend(feeds)
        self.shapes.extend(value.shape for value in feeds.values())
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            return func(*args)
        finally:
            self.active -= 1


class FixedDetector:
    """Detector returning preset boxes, for exercising the pipelines alone."""

    name = "fixed"
    state = NetworkState.LOADED
    default_options = DetectOptions()

    def __init__(self, rects: Sequence[Rect], scores: Sequence[float] | None = None) -> None:
        self.rects = list(rects)
        self.scores = list(scores) if scores is not None else [0.9] * len(self.rects)
        self.calls = 0

    def load(self, source: object) -> None:
        return None

    async def forward(self, image: object) -> tuple[()]:
        return ()

    async def detect(self, image: NDArray[np.generic], options: DetectOptions | None = None) -> list[FaceDetection]:
        options = options if options is not None else self.default_options
        self.calls += 1
        height, width = image.shape[:2]
        detections = [
            FaceDetection(rect, score, width, height)
            for rect, score in zip(self.rects, self.scores, strict=True)
            if score >= options.min_confidence
        ]
        return detections[: options.max_results]

    def dispose(self) -> None:
        return None
