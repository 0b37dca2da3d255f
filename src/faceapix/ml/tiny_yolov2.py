"""Tiny YOLOv2 face detector.

Eight 3x3 convolution layers with leaky relu and max pooling, followed by a
1x1 output convolution predicting ``(tx, ty, tw, th, objectness)``
for five anchors per grid cell. The separable variant replaces each 3x3
layer with a depthwise + pointwise pair and subtracts the mean RGB value.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from faceapix.ml.face_detector import DetectOptions, select_detections
from faceapix.ml.geometry import FaceDetection, Point, decode_grid_anchors
from faceapix.ml.graph import GraphBuilder, fold_scale
from faceapix.ml.network import NetworkRuntime, NetworkState
from faceapix.ml.preprocessing import square_input, to_batch, validate_image
from faceapix.ml.tensors import Tensor, TensorScope
from faceapix.ml.weights import WeightLayout, read_weights

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceapix.ml.model_manager import ModelManager
    from faceapix.ml.network import Runner
    from faceapix.ml.tensors import TensorRegistry
    from faceapix.ml.weights import WeightSource

logger = logging.getLogger(__name__)

DEFAULT_INPUT_SIZE = 416
# (tx, ty, tw, th, objectness); a single class carries no class scores
BOX_ENCODING_SIZE = 5
LEAKY_ALPHA = 0.1
PIXEL_SCALE = 1.0 / 256.0
MEAN_RGB_SEPARABLE = (117.001, 114.697, 97.404)

DEFAULT_ANCHORS: tuple[Point, ...] = (
    Point(1.603231, 2.094468),
    Point(6.041143, 7.080126),
    Point(2.882459, 3.518061),
    Point(4.266906, 5.178857),
    Point(9.041765, 10.66308),
)
SEPARABLE_CONV_ANCHORS: tuple[Point, ...] = (
    Point(1.08, 1.19),
    Point(3.42, 4.41),
    Point(6.63, 11.38),
    Point(9.42, 5.11),
    Point(16.62, 10.52),
)

# (in_channels, out_channels) of conv0..conv7
CONV_CHANNELS: tuple[tuple[int, int], ...] = (
    (3, 16),
    (16, 32),
    (32, 64),
    (64, 128),
    (128, 256),
    (256, 512),
    (512, 1024),
    (1024, 1024),
)

DEFAULT_OPTIONS = DetectOptions(min_confidence=0.5, max_results=100, iou_threshold=0.4)


def build_layout(*, with_separable_conv: bool = False, num_anchors: int = 5) -> WeightLayout:
    name = "tiny_yolov2_separable_conv" if with_separable_conv else "tiny_yolov2"
    layout = WeightLayout(name)
    for idx, (cin, cout) in enumerate(CONV_CHANNELS):
        if with_separable_conv:
            layout.add(f"conv{idx}/depthwise_filter", 3, 3, cin, 1)
            layout.add(f"conv{idx}/pointwise_filter", 1, 1, cin, cout)
            layout.add(f"conv{idx}/bias", cout)
        else:
            layout.conv(f"conv{idx}/conv", 3, cin, cout)
            layout.add(f"conv{idx}/bn/sub", cout)
            layout.add(f"conv{idx}/bn/truediv", cout)
    layout.conv("conv8", 1, CONV_CHANNELS[-1][1], num_anchors * BOX_ENCODING_SIZE)
    return layout


def fold_batch_norm(
    filters: NDArray[np.float32],
    bias: NDArray[np.float32],
    sub: NDArray[np.float32],
    truediv: NDArray[np.float32],
) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
    """Fold ``(conv(x) - sub) * truediv + bias`` into one convolution."""
    folded, offset = fold_scale(filters, None, truediv, -sub * truediv)
    return folded, (offset + bias).astype(np.float32)


def build_graph(params: dict[str, NDArray[np.float32]], *, with_separable_conv: bool) -> bytes:
    g = GraphBuilder("tiny_yolov2")
    x = g.input("input", ["N", 3, "H", "W"])

    for idx in range(len(CONV_CHANNELS)):
        if with_separable_conv:
            x = g.conv(x, params[f"conv{idx}/depthwise_filter"], depthwise=True, name=f"conv{idx}/depthwise")
            pointwise = params[f"conv{idx}/pointwise_filter"]
            x = g.conv(x, pointwise, params[f"conv{idx}/bias"], name=f"conv{idx}/pointwise")
        else:
            filters, bias = fold_batch_norm(
                params[f"conv{idx}/conv/filters"],
                params[f"conv{idx}/conv/bias"],
                params[f"conv{idx}/bn/sub"],
                params[f"conv{idx}/bn/truediv"],
            )
            x = g.conv(x, filters, bias, name=f"conv{idx}/conv")
        x = g.leaky_relu(x, LEAKY_ALPHA)
        if idx < 5:
            x = g.max_pool(x, 2, 2)
        elif idx == 5:
            x = g.max_pool(x, 2, 1, padding="same")

    g.output(g.conv(x, params["conv8/filters"], params["conv8/bias"], name="conv8"), "grid")
    return g.build()


class TinyYolov2:
    """Tiny YOLOv2 face detector.

    Args:
        input_size: Side of the square network input, a multiple of 32.
        with_separable_conv: Use the depthwise-separable weight layout.
        quantized: Resolve registry names to quantized weight manifests.
        manager: Resolves registry names and creates sessions.
        runner: Awaitable executor for the session call.
        registry: Tensor registry that tracks this network's buffers.
    """

    default_options = DEFAULT_OPTIONS

    def __init__(
        self,
        *,
        input_size: int = DEFAULT_INPUT_SIZE,
        with_separable_conv: bool = False,
        quantized: bool = False,
        manager: ModelManager | None = None,
        runner: Runner | None = None,
        registry: TensorRegistry | None = None,
    ) -> None:
        if input_size < 32 or input_size % 32:
            raise ValueError(f"input_size must be a positive multiple of 32, got {input_size}")
        self.input_size = input_size
        self.with_separable_conv = with_separable_conv
        self.anchors = SEPARABLE_CONV_ANCHORS if with_separable_conv else DEFAULT_ANCHORS
        self.mean_rgb = MEAN_RGB_SEPARABLE if with_separable_conv else (0.0, 0.0, 0.0)
        self.layout = build_layout(with_separable_conv=with_separable_conv, num_anchors=len(self.anchors))
        self._quantized = quantized
        self._runtime = NetworkRuntime(self.layout.network, manager=manager, runner=runner, registry=registry)

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
        self._runtime.bind(params, build_graph(params, with_separable_conv=self.with_separable_conv))

    async def forward(self, image: NDArray[np.generic] | Tensor) -> tuple[Tensor]:
        """Return the raw ``(S, S, anchors, 5)`` prediction grid for one image.

        The image is zero-padded at the bottom/right to a square, so grid
        coordinates are relative to that square.
        """
        self._runtime.ensure_loaded()
        pixels = validate_image(image)
        with TensorScope(self._runtime.registry) as scope:
            resized, _ = square_input(pixels, self.input_size)
            batch = scope.track(to_batch([resized], mean_rgb=self.mean_rgb, scale=PIXEL_SCALE))
            (grid,) = await self._runtime.run({"input": batch.data})
        cells = grid.shape[2]
        predictions = grid[0].transpose(1, 2, 0).reshape(cells, grid.shape[3], len(self.anchors), BOX_ENCODING_SIZE)
        (output,) = self._runtime.track_outputs([predictions])
        return (output,)

    async def detect(
        self,
        image: NDArray[np.generic] | Tensor,
        options: DetectOptions | None = None,
    ) -> list[FaceDetection]:
        options = options if options is not None else self.default_options
        pixels = validate_image(image)
        height, width = pixels.shape[:2]

        with TensorScope(self._runtime.registry) as scope:
            (grid,) = await self.forward(pixels)
            scope.adopt(grid)
            boxes, scores = decode_grid_anchors(grid.data, self.anchors)
            detections = select_detections(boxes * max(height, width), scores, width, height, options)

        logger.debug("%s: %d detections", self.name, len(detections))
        return detections

    def dispose(self) -> None:
        self._runtime.dispose()
