"""Facial landmark point sets and the 68-point landmark network.

``FaceLandmarks68`` follows the iBUG 300-W point order. ``FaceLandmarks5``
holds the MTCNN points (eyes, nose, mouth corners). Both can derive the
square face box used to align a face for the recognition network.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

import cv2
import numpy as np

from faceapix.ml.geometry import Point, Rect, center_of
from faceapix.ml.graph import GraphBuilder
from faceapix.ml.network import NetworkRuntime, NetworkState
from faceapix.ml.preprocessing import pad_to_square, to_batch, validate_image
from faceapix.ml.tensors import Tensor, TensorScope
from faceapix.ml.weights import WeightLayout, read_weights

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceapix.ml.model_manager import ModelManager
    from faceapix.ml.network import Runner
    from faceapix.ml.tensors import TensorRegistry
    from faceapix.ml.weights import WeightSource

logger = logging.getLogger(__name__)

# Eye-to-mouth distance as a fraction of the aligned box side.
ALIGN_SCALE = 0.45
# Relative position of the eyes/mouth center inside the aligned box.
ALIGN_CENTER = Point(0.5, 0.43)


# ---------------------------------------------------------------------------
# Point sets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FaceLandmarks:
    """Ordered landmark points in the coordinate frame of an image (or crop)."""

    NUM_POINTS: ClassVar[int | None] = None

    points: tuple[Point, ...]
    image_width: int
    image_height: int

    def __post_init__(self) -> None:
        if self.NUM_POINTS is not None and len(self.points) != self.NUM_POINTS:
            raise ValueError(f"{type(self).__name__} needs {self.NUM_POINTS} points, got {len(self.points)}")

    @classmethod
    def from_relative(
        cls,
        relative: NDArray[np.floating],
        image_width: int,
        image_height: int,
    ) -> FaceLandmarks:
        """Build from ``(K, 2)`` coordinates relative to the image size."""
        relative = np.asarray(relative, dtype=np.float64).reshape(-1, 2)
        points = tuple(Point(float(x) * image_width, float(y) * image_height) for x, y in relative)
        return cls(points, image_width, image_height)

    @property
    def relative_positions(self) -> list[Point]:
        return [Point(p.x / self.image_width, p.y / self.image_height) for p in self.points]

    def as_array(self) -> NDArray[np.float32]:
        return np.array([(p.x, p.y) for p in self.points], dtype=np.float32).reshape(-1, 2)

    def shift_by(
        self,
        dx: float,
        dy: float,
        image_width: int | None = None,
        image_height: int | None = None,
    ) -> FaceLandmarks:
        """Translate every point, optionally re-framing into a larger image."""
        return type(self)(
            tuple(Point(p.x + dx, p.y + dy) for p in self.points),
            self.image_width if image_width is None else image_width,
            self.image_height if image_height is None else image_height,
        )

    @property
    def rotation(self) -> float:
        """Angle of the eye line in degrees; positive when it slopes down to the right."""
        left, right, _ = self._alignment_points()
        return math.degrees(math.atan2(right.y - left.y, right.x - left.x))

    def align(self) -> Rect:
        """Square face box derived from the eye and mouth centers, clipped to the image.

        The box side is the eye-to-mouth distance divided by ``ALIGN_SCALE``
        and the mean of the three centers sits at ``ALIGN_CENTER`` inside it.
        """
        left_eye, right_eye, mouth = self._alignment_points()
        eye_center = (left_eye + right_eye) / 2
        size = math.floor((mouth - eye_center).magnitude() / ALIGN_SCALE)
        ref = center_of([left_eye, right_eye, mouth]).floor()
        box = Rect(
            math.floor(ref.x - ALIGN_CENTER.x * size),
            math.floor(ref.y - ALIGN_CENTER.y * size),
            size,
            size,
        )
        return box.clip(self.image_width, self.image_height)

    def _alignment_points(self) -> tuple[Point, Point, Point]:
        """Return ``(left_eye_center, right_eye_center, mouth_center)``."""
        raise NotImplementedError


@dataclass(frozen=True)
class FaceLandmarks68(FaceLandmarks):
    NUM_POINTS: ClassVar[int | None] = 68

    @property
    def jaw_outline(self) -> tuple[Point, ...]:
        return self.points[0:17]

    @property
    def left_eyebrow(self) -> tuple[Point, ...]:
        return self.points[17:22]

    @property
    def right_eyebrow(self) -> tuple[Point, ...]:
        return self.points[22:27]

    @property
    def nose(self) -> tuple[Point, ...]:
        return self.points[27:36]

    @property
    def left_eye(self) -> tuple[Point, ...]:
        return self.points[36:42]

    @property
    def right_eye(self) -> tuple[Point, ...]:
        return self.points[42:48]

    @property
    def mouth(self) -> tuple[Point, ...]:
        return self.points[48:68]

    def _alignment_points(self) -> tuple[Point, Point, Point]:
        return center_of(self.left_eye), center_of(self.right_eye), center_of(self.mouth)


@dataclass(frozen=True)
class FaceLandmarks5(FaceLandmarks):
    NUM_POINTS: ClassVar[int | None] = 5

    @property
    def left_eye(self) -> Point:
        return self.points[0]

    @property
    def right_eye(self) -> Point:
        return self.points[1]

    @property
    def nose(self) -> Point:
        return self.points[2]

    @property
    def mouth(self) -> tuple[Point, Point]:
        return self.points[3], self.points[4]

    def _alignment_points(self) -> tuple[Point, Point, Point]:
        return self.left_eye, self.right_eye, center_of(self.mouth)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

INPUT_SIZE = 128
NUM_LANDMARKS = 68
MEAN_RGB = (122.782, 117.001, 104.298)

# (in_channels, out_channels) of conv0..conv7
CONV_CHANNELS: tuple[tuple[int, int], ...] = (
    (3, 32),
    (32, 64),
    (64, 64),
    (64, 64),
    (64, 64),
    (64, 128),
    (128, 128),
    (128, 256),
)
FC_FEATURES = 256 * 5 * 5
FC_HIDDEN = 1024


def build_layout() -> WeightLayout:
    layout = WeightLayout("face_landmark_68")
    for idx, (cin, cout) in enumerate(CONV_CHANNELS):
        layout.conv(f"conv{idx}", 3, cin, cout)
    layout.dense("fc0", FC_FEATURES, FC_HIDDEN)
    layout.dense("fc1", FC_HIDDEN, NUM_LANDMARKS * 2)
    return layout


def build_graph(params: dict[str, NDArray[np.float32]]) -> bytes:
    g = GraphBuilder("face_landmark_68")
    x = g.input("input", ["N", 3, INPUT_SIZE, INPUT_SIZE])

    def conv(value: str, idx: int) -> str:
        return g.relu(
            g.conv(
                value,
                params[f"conv{idx}/filters"],
                params[f"conv{idx}/bias"],
                padding="valid",
                name=f"conv{idx}",
            )
        )

    # 128 -> 126 -> 63 -> 61 -> 59 -> 29 -> 27 -> 25 -> 12 -> 10 -> 8 -> 7 -> 5
    x = g.max_pool(conv(x, 0), 2, 2)
    x = g.max_pool(conv(conv(x, 1), 2), 2, 2)
    x = g.max_pool(conv(conv(x, 3), 4), 2, 2)
    x = g.max_pool(conv(conv(x, 5), 6), 2, 1)
    x = conv(x, 7)

    x = g.relu(g.dense(g.flatten_nhwc(x), params["fc0/weights"], params["fc0/bias"]))
    g.output(g.dense(x, params["fc1/weights"], params["fc1/bias"]), "landmarks")
    return g.build()


class FaceLandmarkNet:
    """68-point landmark regression network.

    Input images are zero-padded to a centered square and resized to 128x128;
    the network regresses ``(x, y)`` pairs relative to that square.
    """

    def __init__(
        self,
        *,
        quantized: bool = False,
        manager: ModelManager | None = None,
        runner: Runner | None = None,
        registry: TensorRegistry | None = None,
    ) -> None:
        self.layout = build_layout()
        self._quantized = quantized
        self._runtime = NetworkRuntime("face_landmark_68", manager=manager, runner=runner, registry=registry)

    @property
    def name(self) -> str:
        return self._runtime.name

    @property
    def state(self) -> NetworkState:
        return self._runtime.state

    @property
    def params(self) -> dict[str, Tensor]:
        return self._runtime.params

    @property
    def is_loaded(self) -> bool:
        return self._runtime.is_loaded

    @property
    def param_count(self) -> int:
        return self.layout.size

    def load(self, source: WeightSource) -> None:
        self._runtime.ensure_not_disposed()
        weights = read_weights(source, layout=self.layout, resolver=self._runtime.resolver(quantized=self._quantized))
        params = self.layout.split(weights.values)
        self._runtime.bind(params, build_graph(params))

    async def forward(self, image: NDArray[np.generic] | Tensor) -> tuple[Tensor]:
        """Return the ``(136,)`` interleaved ``x, y`` outputs relative to the padded square."""
        self._runtime.ensure_loaded()
        pixels = validate_image(image)
        with TensorScope(self._runtime.registry) as scope:
            padded, _ = pad_to_square(pixels, center=True)
            resized = cv2.resize(padded, (INPUT_SIZE, INPUT_SIZE), interpolation=cv2.INTER_LINEAR)
            batch = scope.track(to_batch([resized], mean_rgb=MEAN_RGB, scale=1.0 / 255.0))
            (landmarks,) = await self._runtime.run({"input": batch.data})
        (output,) = self._runtime.track_outputs([landmarks[0]])
        return (output,)

    async def predict(self, face: NDArray[np.generic] | Tensor) -> FaceLandmarks68:
        """Predict 68 landmarks in the pixel frame of ``face`` (usually a face crop).

        Raises:
            InvalidImageInput: If ``face`` is empty or not three-channel.
        """
        pixels = validate_image(face)
        height, width = pixels.shape[:2]
        side = max(height, width)
        offset = Point((side - width) // 2, (side - height) // 2)

        with TensorScope(self._runtime.registry) as scope:
            (output,) = await self.forward(pixels)
            scope.adopt(output)
            relative = output.data.reshape(NUM_LANDMARKS, 2).astype(np.float64)

        points = tuple(Point(float(x) * side - offset.x, float(y) * side - offset.y) for x, y in relative)
        return FaceLandmarks68(points, width, height)

    def dispose(self) -> None:
        self._runtime.dispose()

