"""SSD MobileNetV1 face detector.

MobileNetV1 backbone with six SSD box predictors. Feature maps are taken
after ``conv_11`` and ``conv_13`` of the backbone and after four extra
stride-2 prediction convolutions. Each predictor emits box encodings and
three class logits per anchor; the face score is the sigmoid of class 1.

Depthwise blocks carry full batch normalization statistics, folded into the
convolution at load time. The weight file ends with the box priors of the
512px model, which replace the generated anchors at that input size.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

import numpy as np

from faceapix.ml.face_detector import DetectOptions, select_detections
from faceapix.ml.geometry import FaceDetection, decode_anchor_boxes
from faceapix.ml.graph import GraphBuilder, fold_scale
from faceapix.ml.network import NetworkRuntime, NetworkState
from faceapix.ml.preprocessing import square_input, to_batch, validate_image
from faceapix.ml.tensors import Tensor, TensorScope
from faceapix.ml.weights import WeightLayout, read_weights

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from faceapix.ml.model_manager import ModelManager
    from faceapix.ml.network import Runner
    from faceapix.ml.tensors import TensorRegistry
    from faceapix.ml.weights import WeightSource

logger = logging.getLogger(__name__)

DEFAULT_INPUT_SIZE = 512
NUM_CLASSES = 3
NUM_PRIORS = 5118
BATCH_NORM_EPSILON = 1e-3

# layout suffix and the TF variable it was exported from
BATCH_NORM_PARAMS: tuple[tuple[str, str], ...] = (
    ("batch_norm_scale", "gamma"),
    ("batch_norm_offset", "beta"),
    ("batch_norm_mean", "moving_mean"),
    ("batch_norm_variance", "moving_variance"),
)

# (in_channels, out_channels, stride) of backbone blocks conv_1..conv_13
MOBILENET_BLOCKS: tuple[tuple[int, int, int], ...] = (
    (32, 64, 1),
    (64, 128, 2),
    (128, 128, 1),
    (128, 256, 2),
    (256, 256, 1),
    (256, 512, 2),
    (512, 512, 1),
    (512, 512, 1),
    (512, 512, 1),
    (512, 512, 1),
    (512, 512, 1),
    (512, 1024, 2),
    (1024, 1024, 1),
)

# (kernel, in_channels, out_channels, stride) of prediction_layer/conv_0..conv_7
PREDICTION_CONVS: tuple[tuple[int, int, int, int], ...] = (
    (1, 1024, 256, 1),
    (3, 256, 512, 2),
    (1, 512, 128, 1),
    (3, 128, 256, 2),
    (1, 256, 128, 1),
    (3, 128, 256, 2),
    (1, 256, 64, 1),
    (3, 64, 128, 2),
)

# (in_channels, anchors per cell) of box_predictor_0..5
BOX_PREDICTORS: tuple[tuple[int, int], ...] = (
    (512, 3),
    (1024, 6),
    (512, 6),
    (256, 6),
    (256, 6),
    (128, 6),
)


def _pointwise(layout: WeightLayout, prefix: str, sources: Sequence[str], kernel: int, cin: int, cout: int) -> None:
    layout.add(f"{prefix}/filters", kernel, kernel, cin, cout, aliases=[f"{src}/weights" for src in sources])
    offset_aliases = [f"{src}/{name}" for src in sources for name in ("convolution_bn_offset", "BatchNorm/beta")]
    layout.add(f"{prefix}/batch_norm_offset", cout, aliases=offset_aliases)


def _depthwise(layout: WeightLayout, prefix: str, source: str, channels: int) -> None:
    layout.add(f"{prefix}/filters", 3, 3, channels, 1, aliases=[f"{source}/depthwise_weights"])
    for suffix, variable in BATCH_NORM_PARAMS:
        layout.add(f"{prefix}/{suffix}", channels, aliases=[f"{source}/BatchNorm/{variable}"])


def build_layout() -> WeightLayout:
    layout = WeightLayout("ssd_mobilenetv1")
    conv_0_sources = ["MobilenetV1/Conv2d_0", "MobilenetV1/Conv2d_0_pointwise"]
    _pointwise(layout, "mobilenetv1/conv_0", conv_0_sources, 3, 3, 32)
    for idx, (cin, cout, _) in enumerate(MOBILENET_BLOCKS, start=1):
        prefix = f"mobilenetv1/conv_{idx}"
        _depthwise(layout, f"{prefix}/depthwise_conv", f"MobilenetV1/Conv2d_{idx}_depthwise", cin)
        _pointwise(layout, f"{prefix}/pointwise_conv", [f"MobilenetV1/Conv2d_{idx}_pointwise"], 1, cin, cout)
    for idx, (kernel, cin, cout, _) in enumerate(PREDICTION_CONVS):
        _pointwise(layout, f"prediction_layer/conv_{idx}", [f"Prediction/Conv2d_{idx}_pointwise"], kernel, cin, cout)
    for idx, (cin, anchors) in enumerate(BOX_PREDICTORS):
        prefix = f"prediction_layer/box_predictor_{idx}"
        for name, source, width in (
            ("box_encoding_predictor", "BoxEncodingPredictor", 4),
            ("class_predictor", "ClassPredictor", NUM_CLASSES),
        ):
            tf_prefix = f"Prediction/BoxPredictor_{idx}/{source}"
            layout.add(f"{prefix}/{name}/filters", 1, 1, cin, anchors * width, aliases=[f"{tf_prefix}/weights"])
            layout.add(f"{prefix}/{name}/bias", anchors * width, aliases=[f"{tf_prefix}/biases"])
    # box priors of the 512px model as (y_min, x_min, y_max, x_max)
    layout.add("output_layer/extra_dim", 1, NUM_PRIORS, 4, aliases=["Output/extra_dim"])
    return layout


def feature_map_sizes(input_size: int) -> list[int]:
    """Side lengths of the six predictor feature maps for a square input."""
    size = input_size
    for _ in range(4):
        size = math.ceil(size / 2)
    sizes = [size]
    for _ in range(5):
        size = math.ceil(size / 2)
        sizes.append(size)
    return sizes


def generate_anchors(
    sizes: Sequence[int],
    *,
    min_scale: float = 0.2,
    max_scale: float = 0.95,
    aspect_ratios: Sequence[float] = (1.0, 2.0, 0.5, 3.0, 1.0 / 3.0),
) -> NDArray[np.float32]:
    """Multiple-grid SSD anchors as ``(y_center, x_center, height, width)`` rows.

    The lowest layer uses three boxes (scale 0.1 square, plus ``min_scale`` at
    aspect ratios 2 and 1/2). Every other layer uses one box per aspect ratio
    and an extra square box at the geometric mean of its and the next scale.
    Rows are ordered by ``(row, col, box)`` to match the predictor outputs.
    """
    num_layers = len(sizes)
    scales = [min_scale + (max_scale - min_scale) * i / (num_layers - 1) for i in range(num_layers)] + [1.0]

    layers: list[NDArray[np.float32]] = []
    for layer, size in enumerate(sizes):
        if layer == 0:
            specs = [(0.1, 1.0), (scales[0], 2.0), (scales[0], 0.5)]
        else:
            specs = [(scales[layer], ratio) for ratio in aspect_ratios]
            specs.append((math.sqrt(scales[layer] * scales[layer + 1]), 1.0))

        heights = np.array([scale / math.sqrt(ratio) for scale, ratio in specs], dtype=np.float32)
        widths = np.array([scale * math.sqrt(ratio) for scale, ratio in specs], dtype=np.float32)
        centers = (np.arange(size, dtype=np.float32) + 0.5) / size
        yc, xc, box = np.meshgrid(centers, centers, np.arange(len(specs)), indexing="ij")
        layers.append(
            np.stack([yc.ravel(), xc.ravel(), heights[box.ravel()], widths[box.ravel()]], axis=-1).astype(np.float32)
        )
    return np.concatenate(layers, axis=0)


def priors_to_anchors(extra_dim: NDArray[np.float32]) -> NDArray[np.float32]:
    """Convert ``(y_min, x_min, y_max, x_max)`` priors to ``(y_center, x_center, height, width)`` rows."""
    corners = np.asarray(extra_dim, dtype=np.float32).reshape(-1, 4)
    sizes = corners[:, 2:] - corners[:, :2]
    return np.concatenate([corners[:, :2] + sizes / 2, sizes], axis=1).astype(np.float32)


def fold_depthwise_batch_norm(
    filters: NDArray[np.float32],
    scale: NDArray[np.float32],
    offset: NDArray[np.float32],
    mean: NDArray[np.float32],
    variance: NDArray[np.float32],
) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
    """Fold inference-mode batch normalization into a depthwise convolution."""
    factor = scale / np.sqrt(variance + BATCH_NORM_EPSILON)
    return fold_scale(filters, None, factor, offset - mean * factor, depthwise=True)


def build_graph(params: dict[str, NDArray[np.float32]]) -> bytes:
    g = GraphBuilder("ssd_mobilenetv1")
    x = g.input("input", ["N", 3, "H", "W"])

    x = g.relu6(
        g.conv(
            x,
            params["mobilenetv1/conv_0/filters"],
            params["mobilenetv1/conv_0/batch_norm_offset"],
            stride=2,
            name="mobilenetv1/conv_0",
        )
    )
    feature_maps: list[str] = []
    for idx, (_, _, stride) in enumerate(MOBILENET_BLOCKS, start=1):
        prefix = f"mobilenetv1/conv_{idx}"
        depthwise = f"{prefix}/depthwise_conv"
        filters, bias = fold_depthwise_batch_norm(
            params[f"{depthwise}/filters"],
            params[f"{depthwise}/batch_norm_scale"],
            params[f"{depthwise}/batch_norm_offset"],
            params[f"{depthwise}/batch_norm_mean"],
            params[f"{depthwise}/batch_norm_variance"],
        )
        x = g.relu6(g.conv(x, filters, bias, stride=stride, depthwise=True, name=depthwise))
        x = g.relu6(
            g.conv(
                x,
                params[f"{prefix}/pointwise_conv/filters"],
                params[f"{prefix}/pointwise_conv/batch_norm_offset"],
                name=f"{prefix}/pointwise_conv",
            )
        )
        if idx in (11, 13):
            feature_maps.append(x)

    for idx, (_, _, _, stride) in enumerate(PREDICTION_CONVS):
        prefix = f"prediction_layer/conv_{idx}"
        filters, offset = params[f"{prefix}/filters"], params[f"{prefix}/batch_norm_offset"]
        x = g.relu6(g.conv(x, filters, offset, stride=stride, name=prefix))
        if idx % 2 == 1:
            feature_maps.append(x)

    box_rows: list[str] = []
    class_rows: list[str] = []
    for idx, feature_map in enumerate(feature_maps):
        prefix = f"prediction_layer/box_predictor_{idx}"
        boxes = g.conv(
            feature_map,
            params[f"{prefix}/box_encoding_predictor/filters"],
            params[f"{prefix}/box_encoding_predictor/bias"],
            name=f"{prefix}/box_encoding_predictor",
        )
        classes = g.conv(
            feature_map,
            params[f"{prefix}/class_predictor/filters"],
            params[f"{prefix}/class_predictor/bias"],
            name=f"{prefix}/class_predictor",
        )
        box_rows.append(g.to_rows(boxes, 4))
        class_rows.append(g.to_rows(classes, NUM_CLASSES))

    g.output(g.concat(box_rows, axis=1), "box_encodings")
    g.output(g.sigmoid(g.concat(class_rows, axis=1)), "class_scores")
    return g.build()


class SsdMobilenetv1:
    """SSD MobileNetV1 face detector."""

    default_options = DetectOptions()

    def __init__(
        self,
        *,
        input_size: int = DEFAULT_INPUT_SIZE,
        quantized: bool = False,
        manager: ModelManager | None = None,
        runner: Runner | None = None,
        registry: TensorRegistry | None = None,
    ) -> None:
        if input_size < 32 or input_size % 32:
            raise ValueError(f"input_size must be a positive multiple of 32, got {input_size}")
        self.input_size = input_size
        self.layout = build_layout()
        self._quantized = quantized
        self._anchors = generate_anchors(feature_map_sizes(input_size))
        self._runtime = NetworkRuntime("ssd_mobilenetv1", manager=manager, runner=runner, registry=registry)

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

    @property
    def anchors(self) -> NDArray[np.float32]:
        return self._anchors

    def load(self, source: WeightSource) -> None:
        self._runtime.ensure_not_disposed()
        weights = read_weights(source, layout=self.layout, resolver=self._runtime.resolver(quantized=self._quantized))
        params = self.layout.split(weights.values)
        self._runtime.bind(params, build_graph(params))
        if self.input_size == DEFAULT_INPUT_SIZE:
            self._anchors = priors_to_anchors(params["output_layer/extra_dim"])

    async def forward(self, image: NDArray[np.generic] | Tensor) -> tuple[Tensor, Tensor]:
        """Return ``(box_encodings (A, 4), class_scores (A, 3))`` for one image.

        Box encodings are ``(ty, tx, th, tw)`` relative to :attr:`anchors` over
        the bottom/right zero-padded square input.
        """
        self._runtime.ensure_loaded()
        pixels = validate_image(image)
        with TensorScope(self._runtime.registry) as scope:
            resized, _ = square_input(pixels, self.input_size)
            batch = scope.track(to_batch([resized], scale=1.0 / 127.5, shift=-1.0))
            box_encodings, class_scores = await self._runtime.run({"input": batch.data})
        encodings, scores = self._runtime.track_outputs([box_encodings[0], class_scores[0]])
        return encodings, scores

    async def detect(
        self,
        image: NDArray[np.generic] | Tensor,
        options: DetectOptions | None = None,
    ) -> list[FaceDetection]:
        options = options if options is not None else self.default_options
        pixels = validate_image(image)
        height, width = pixels.shape[:2]

        with TensorScope(self._runtime.registry) as scope:
            box_encodings, class_scores = await self.forward(pixels)
            scope.adopt(box_encodings, class_scores)
            boxes = np.clip(decode_anchor_boxes(box_encodings.data, self._anchors), 0.0, 1.0) * max(height, width)
            scores = class_scores.data[:, 1]
            detections = select_detections(boxes, scores, width, height, options)

        logger.debug("ssd_mobilenetv1: %d detections", len(detections))
        return detections

    def dispose(self) -> None:
        self._runtime.dispose()
