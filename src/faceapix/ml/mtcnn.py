"""MTCNN cascade face detector.

Three networks share one weight file:

- PNet scans an image pyramid with 12x12 windows (stride 2) and proposes
  candidate boxes with a regression offset each.
- RNet re-scores 24x24 patches of the surviving candidates and refines them.
- ONet re-scores 48x48 patches, refines the boxes once more and predicts
  five facial landmarks.

Every stage ends with non-maximum suppression. A stage that leaves no
candidates ends the cascade with zero detections.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from faceapix.ml.face_detector import DetectOptions, select_candidates
from faceapix.ml.face_landmarks import FaceLandmarks5
from faceapix.ml.geometry import (
    FaceDetection,
    Point,
    Rect,
    finite_boxes_mask,
    nms_indices,
    regress_boxes,
    square_boxes,
)
from faceapix.ml.graph import GraphBuilder
from faceapix.ml.network import NetworkRuntime, NetworkState
from faceapix.ml.preprocessing import extract_patch, to_batch, validate_image
from faceapix.ml.tensors import Tensor, TensorScope
from faceapix.ml.weights import WeightLayout, read_weights

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceapix.ml.model_manager import ModelManager
    from faceapix.ml.network import Runner
    from faceapix.ml.tensors import TensorRegistry
    from faceapix.ml.weights import WeightSource

logger = logging.getLogger(__name__)

CELL_SIZE = 12
CELL_STRIDE = 2
RNET_INPUT = 24
ONET_INPUT = 48
NUM_LANDMARKS = 5

# Pixel normalization: (x - 127.5) / 128
PIXEL_MEAN = 127.5
PIXEL_SCALE = 0.0078125

NMS_PER_SCALE = 0.5
NMS_ACROSS_SCALES = 0.7
NMS_STAGE2 = 0.7
NMS_STAGE3 = 0.7


@dataclass(frozen=True)
class MtcnnOptions:
    """Cascade configuration.

    Attributes:
        min_face_size: Smallest face side in pixels the pyramid looks for.
        scale_factor: Ratio between successive pyramid levels.
        max_num_scales: Cap on the number of pyramid levels.
        score_thresholds: Minimum face probability of PNet, RNet and ONet.
        scale_steps: Explicit pyramid scales, overriding the three above.
    """

    min_face_size: int = 20
    scale_factor: float = 0.709
    max_num_scales: int = 10
    score_thresholds: tuple[float, float, float] = (0.6, 0.7, 0.7)
    scale_steps: tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        if self.min_face_size < 1:
            raise ValueError(f"min_face_size must be >= 1, got {self.min_face_size}")
        if not 0.0 < self.scale_factor < 1.0:
            raise ValueError(f"scale_factor must be in (0, 1), got {self.scale_factor}")
        if self.max_num_scales < 1:
            raise ValueError(f"max_num_scales must be >= 1, got {self.max_num_scales}")
        if len(self.score_thresholds) != 3:
            raise ValueError("score_thresholds needs one value per stage")
        if self.scale_steps is not None and not all(step > 0 for step in self.scale_steps):
            raise ValueError("scale_steps must be positive")

    def pyramid_scales(self, width: int, height: int) -> list[float]:
        """Image scales at which PNet's 12px window covers faces of ``min_face_size`` and up."""
        if self.scale_steps is not None:
            return list(self.scale_steps)
        base = CELL_SIZE / self.min_face_size
        min_layer = min(width, height) * base
        scales: list[float] = []
        factor = 1.0
        while min_layer * factor >= CELL_SIZE and len(scales) < self.max_num_scales:
            scales.append(base * factor)
            factor *= self.scale_factor
        return scales


@dataclass(frozen=True)
class MtcnnResult:
    """A cascade detection with its five ONet landmarks in image coordinates."""

    detection: FaceDetection
    landmarks: FaceLandmarks5


# ---------------------------------------------------------------------------
# Layout and graphs
# ---------------------------------------------------------------------------


def _conv_prelu(layout: WeightLayout, name: str, kernel: int, cin: int, cout: int, prelu: str) -> None:
    layout.conv(name, kernel, cin, cout)
    layout.add(f"{prelu}_alpha", cout)


def build_layout() -> WeightLayout:
    layout = WeightLayout("mtcnn")

    _conv_prelu(layout, "pnet/conv1", 3, 3, 10, "pnet/prelu1")
    _conv_prelu(layout, "pnet/conv2", 3, 10, 16, "pnet/prelu2")
    _conv_prelu(layout, "pnet/conv3", 3, 16, 32, "pnet/prelu3")
    layout.conv("pnet/conv4_1", 1, 32, 2)
    layout.conv("pnet/conv4_2", 1, 32, 4)

    _conv_prelu(layout, "rnet/conv1", 3, 3, 28, "rnet/prelu1")
    _conv_prelu(layout, "rnet/conv2", 3, 28, 48, "rnet/prelu2")
    _conv_prelu(layout, "rnet/conv3", 2, 48, 64, "rnet/prelu3")
    layout.dense("rnet/fc1", 3 * 3 * 64, 128)
    layout.add("rnet/prelu4_alpha", 128)
    layout.dense("rnet/fc2_1", 128, 2)
    layout.dense("rnet/fc2_2", 128, 4)

    _conv_prelu(layout, "onet/conv1", 3, 3, 32, "onet/prelu1")
    _conv_prelu(layout, "onet/conv2", 3, 32, 64, "onet/prelu2")
    _conv_prelu(layout, "onet/conv3", 3, 64, 64, "onet/prelu3")
    _conv_prelu(layout, "onet/conv4", 2, 64, 128, "onet/prelu4")
    layout.dense("onet/fc1", 3 * 3 * 128, 256)
    layout.add("onet/prelu5_alpha", 256)
    layout.dense("onet/fc2_1", 256, 2)
    layout.dense("onet/fc2_2", 256, 4)
    layout.dense("onet/fc2_3", 256, NUM_LANDMARKS * 2)
    return layout


def _conv_block(g: GraphBuilder, params: dict[str, NDArray[np.float32]], x: str, name: str, prelu: str) -> str:
    conv = g.conv(x, params[f"{name}/filters"], params[f"{name}/bias"], padding="valid", name=name)
    return g.prelu(conv, params[f"{prelu}_alpha"])


def build_pnet(params: dict[str, NDArray[np.float32]]) -> bytes:
    g = GraphBuilder("mtcnn_pnet")
    x = g.input("pnet_input", ["N", 3, "H", "W"])
    x = _conv_block(g, params, x, "pnet/conv1", "pnet/prelu1")
    x = g.max_pool(x, 2, 2, padding="same")
    x = _conv_block(g, params, x, "pnet/conv2", "pnet/prelu2")
    x = _conv_block(g, params, x, "pnet/conv3", "pnet/prelu3")
    scores = g.conv(x, params["pnet/conv4_1/filters"], params["pnet/conv4_1/bias"], name="pnet/conv4_1")
    regions = g.conv(x, params["pnet/conv4_2/filters"], params["pnet/conv4_2/bias"], name="pnet/conv4_2")
    g.output(g.softmax(scores, axis=1), "scores")
    g.output(regions, "regions")
    return g.build()


def build_rnet(params: dict[str, NDArray[np.float32]]) -> bytes:
    g = GraphBuilder("mtcnn_rnet")
    x = g.input("rnet_input", ["N", 3, RNET_INPUT, RNET_INPUT])
    x = g.max_pool(_conv_block(g, params, x, "rnet/conv1", "rnet/prelu1"), 3, 2, padding="same")
    x = g.max_pool(_conv_block(g, params, x, "rnet/conv2", "rnet/prelu2"), 3, 2)
    x = _conv_block(g, params, x, "rnet/conv3", "rnet/prelu3")
    x = g.dense(g.flatten_nhwc(x), params["rnet/fc1/weights"], params["rnet/fc1/bias"])
    x = g.prelu(x, params["rnet/prelu4_alpha"], spatial=False)
    g.output(g.softmax(g.dense(x, params["rnet/fc2_1/weights"], params["rnet/fc2_1/bias"])), "scores")
    g.output(g.dense(x, params["rnet/fc2_2/weights"], params["rnet/fc2_2/bias"]), "regions")
    return g.build()


def build_onet(params: dict[str, NDArray[np.float32]]) -> bytes:
    g = GraphBuilder("mtcnn_onet")
    x = g.input("onet_input", ["N", 3, ONET_INPUT, ONET_INPUT])
    x = g.max_pool(_conv_block(g, params, x, "onet/conv1", "onet/prelu1"), 3, 2, padding="same")
    x = g.max_pool(_conv_block(g, params, x, "onet/conv2", "onet/prelu2"), 3, 2)
    x = g.max_pool(_conv_block(g, params, x, "onet/conv3", "onet/prelu3"), 2, 2, padding="same")
    x = _conv_block(g, params, x, "onet/conv4", "onet/prelu4")
    x = g.dense(g.flatten_nhwc(x), params["onet/fc1/weights"], params["onet/fc1/bias"])
    x = g.prelu(x, params["onet/prelu5_alpha"], spatial=False)
    g.output(g.softmax(g.dense(x, params["onet/fc2_1/weights"], params["onet/fc2_1/bias"])), "scores")
    g.output(g.dense(x, params["onet/fc2_2/weights"], params["onet/fc2_2/bias"]), "regions")
    g.output(g.dense(x, params["onet/fc2_3/weights"], params["onet/fc2_3/bias"]), "points")
    return g.build()


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


def _normalize(images: list[NDArray[np.float32]]) -> NDArray[np.float32]:
    """Normalize RGB images into the cascade's input layout.

    The networks take BGR input with the spatial axes swapped, ``[N, C, W, H]``.
    """
    batch = to_batch(images, mean_rgb=(PIXEL_MEAN, PIXEL_MEAN, PIXEL_MEAN), scale=PIXEL_SCALE)
    return np.ascontiguousarray(batch[:, ::-1].transpose(0, 1, 3, 2))


def _round_half_up(values: NDArray[np.floating]) -> NDArray[np.float32]:
    return np.floor(values + 0.5).astype(np.float32)


def pnet_candidates(
    prob: NDArray[np.float32],
    regions: NDArray[np.float32],
    scale: float,
    threshold: float,
) -> tuple[NDArray[np.float32], NDArray[np.float32], NDArray[np.float32]]:
    """Turn one pyramid level's PNet maps into candidate windows.

    Args:
        prob: ``[1, 2, W', H']`` face probabilities, x along axis 2.
        regions: ``[1, 4, W', H']`` edge offsets in units of the window size.
        scale: Pyramid scale of the level.
        threshold: Minimum face probability.

    Returns:
        ``(boxes, scores, offsets)``: windows as image-space ``(x_min, y_min, x_max, y_max)``
        and, per window, its face probability and four edge offsets.
    """
    face_prob = prob[0, 1]
    xs, ys = np.nonzero(face_prob >= threshold)
    boxes = _round_half_up(
        np.stack(
            [
                (CELL_STRIDE * xs + 1) / scale,
                (CELL_STRIDE * ys + 1) / scale,
                (CELL_STRIDE * xs + CELL_SIZE) / scale,
                (CELL_STRIDE * ys + CELL_SIZE) / scale,
            ],
            axis=-1,
        ).reshape(-1, 4)
    )
    scores = face_prob[xs, ys].astype(np.float32)
    offsets = regions[0][:, xs, ys].T.astype(np.float32).reshape(-1, 4)
    return boxes, scores, offsets


def _round_boxes(boxes: NDArray[np.float32]) -> NDArray[np.float32]:
    return np.round(boxes).astype(np.float32)


class Mtcnn:
    """Three-stage cascade face detector.

    Args:
        options: Pyramid and per-stage threshold configuration.
        quantized: Resolve registry names to quantized weight manifests.
        manager: Resolves registry names and creates sessions.
        runner: Awaitable executor for each session call.
        registry: Tensor registry that tracks this network's buffers.
    """

    default_options = DetectOptions(min_confidence=0.7, max_results=100, iou_threshold=NMS_STAGE3)

    def __init__(
        self,
        options: MtcnnOptions | None = None,
        *,
        quantized: bool = False,
        manager: ModelManager | None = None,
        runner: Runner | None = None,
        registry: TensorRegistry | None = None,
    ) -> None:
        self.options = options if options is not None else MtcnnOptions()
        self.layout = build_layout()
        self._quantized = quantized
        self._runtime = NetworkRuntime("mtcnn", manager=manager, runner=runner, registry=registry)

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
        graphs = {"pnet": build_pnet(params), "rnet": build_rnet(params), "onet": build_onet(params)}
        self._runtime.bind(params, graphs)

    async def forward(self, image: NDArray[np.generic] | Tensor) -> tuple[Tensor, Tensor, Tensor]:
        """Run the cascade and return ``(boxes (K, 4), scores (K,), landmarks (K, 5, 2))``.

        Boxes are absolute ``(x_min, y_min, x_max, y_max)`` and landmarks are
        absolute ``(x, y)`` image coordinates, after the stage-3 suppression.
        """
        self._runtime.ensure_loaded()
        pixels = validate_image(image)
        thresholds = self.options.score_thresholds

        with TensorScope(self._runtime.registry) as scope:
            boxes = await self._stage1(pixels, thresholds[0], scope)
            scores = np.zeros(0, dtype=np.float32)
            points = np.zeros((0, NUM_LANDMARKS, 2), dtype=np.float32)
            if len(boxes):
                boxes = await self._stage2(pixels, boxes, thresholds[1], scope)
            if len(boxes):
                boxes, scores, points = await self._stage3(pixels, boxes, thresholds[2], scope)

        boxes_out, scores_out, points_out = self._runtime.track_outputs([boxes, scores, points])
        return boxes_out, scores_out, points_out

    async def detect(
        self,
        image: NDArray[np.generic] | Tensor,
        options: DetectOptions | None = None,
    ) -> list[FaceDetection]:
        return [result.detection for result in await self.detect_with_landmarks(image, options)]

    async def detect_with_landmarks(
        self,
        image: NDArray[np.generic] | Tensor,
        options: DetectOptions | None = None,
    ) -> list[MtcnnResult]:
        """Detect faces and return them with their five cascade landmarks."""
        options = options if options is not None else self.default_options
        pixels = validate_image(image)
        height, width = pixels.shape[:2]

        with TensorScope(self._runtime.registry) as scope:
            outputs = await self.forward(pixels)
            scope.adopt(*outputs)
            boxes, scores, points = (tensor.data for tensor in outputs)
            kept, clipped, scores = select_candidates(boxes, scores, width, height, options, use_min=True)
            results = [
                MtcnnResult(
                    detection=FaceDetection(
                        rect=Rect.from_corners(*(float(v) for v in clipped[i])),
                        score=float(min(max(scores[i], 0.0), 1.0)),
                        image_width=width,
                        image_height=height,
                    ),
                    landmarks=FaceLandmarks5(
                        tuple(Point(float(x), float(y)) for x, y in points[i]),
                        width,
                        height,
                    ),
                )
                for i in kept
            ]

        logger.debug("mtcnn: %d detections", len(results))
        return results

    def dispose(self) -> None:
        self._runtime.dispose()

    # -- Stages -------------------------------------------------------------

    async def _stage1(self, image: NDArray[np.float32], threshold: float, scope: TensorScope) -> NDArray[np.float32]:
        """Propose squared, rounded candidate boxes from the image pyramid."""
        height, width = image.shape[:2]
        all_boxes: list[NDArray[np.float32]] = []
        all_scores: list[NDArray[np.float32]] = []
        all_regions: list[NDArray[np.float32]] = []

        for scale in self.options.pyramid_scales(width, height):
            scaled_w, scaled_h = math.ceil(width * scale), math.ceil(height * scale)
            if min(scaled_w, scaled_h) < CELL_SIZE:
                continue
            resized = cv2.resize(image, (scaled_w, scaled_h), interpolation=cv2.INTER_AREA)
            batch = scope.track(_normalize([resized]))
            prob, regions = await self._runtime.run({"pnet_input": batch.data}, graph="pnet")

            boxes, scores, offsets = pnet_candidates(prob, regions, scale, threshold)
            if not len(boxes):
                continue

            kept = nms_indices(boxes, scores, NMS_PER_SCALE)
            all_boxes.append(boxes[kept])
            all_scores.append(scores[kept])
            all_regions.append(offsets[kept])
            logger.debug("mtcnn stage 1: scale %.4f, %d candidates", scale, len(kept))

        if not all_boxes:
            return np.zeros((0, 4), dtype=np.float32)

        boxes = np.concatenate(all_boxes)
        kept = nms_indices(boxes, np.concatenate(all_scores), NMS_ACROSS_SCALES)
        refined = regress_boxes(boxes[kept], np.concatenate(all_regions)[kept])
        refined = _round_boxes(square_boxes(refined))
        refined = refined[finite_boxes_mask(refined)]
        logger.debug("mtcnn stage 1: %d candidates", len(refined))
        return refined

    async def _stage2(
        self,
        image: NDArray[np.float32],
        boxes: NDArray[np.float32],
        threshold: float,
        scope: TensorScope,
    ) -> NDArray[np.float32]:
        """Re-score and refine candidates on 24x24 patches."""
        batch = scope.track(_normalize(self._patches(image, boxes, RNET_INPUT)))
        prob, regions = await self._runtime.run({"rnet_input": batch.data}, graph="rnet")

        keep = prob[:, 1] > threshold
        boxes, scores, regions = boxes[keep], prob[keep, 1], regions[keep]
        if not len(boxes):
            logger.debug("mtcnn stage 2: no candidates left")
            return np.zeros((0, 4), dtype=np.float32)

        kept = nms_indices(boxes, scores, NMS_STAGE2)
        refined = _round_boxes(square_boxes(regress_boxes(boxes[kept], regions[kept])))
        refined = refined[finite_boxes_mask(refined)]
        logger.debug("mtcnn stage 2: %d candidates", len(refined))
        return refined

    async def _stage3(
        self,
        image: NDArray[np.float32],
        boxes: NDArray[np.float32],
        threshold: float,
        scope: TensorScope,
    ) -> tuple[NDArray[np.float32], NDArray[np.float32], NDArray[np.float32]]:
        """Score, refine and locate five landmarks on 48x48 patches."""
        batch = scope.track(_normalize(self._patches(image, boxes, ONET_INPUT)))
        prob, regions, points = await self._runtime.run({"onet_input": batch.data}, graph="onet")

        keep = prob[:, 1] > threshold
        boxes, scores, regions, points = boxes[keep], prob[keep, 1], regions[keep], points[keep]
        if not len(boxes):
            logger.debug("mtcnn stage 3: no candidates left")
            return boxes, np.zeros(0, dtype=np.float32), np.zeros((0, NUM_LANDMARKS, 2), dtype=np.float32)

        # ONet predicts five x values followed by five y values, relative to the input box
        widths = (boxes[:, 2] - boxes[:, 0])[:, None]
        heights = (boxes[:, 3] - boxes[:, 1])[:, None]
        xs = boxes[:, 0:1] + points[:, :NUM_LANDMARKS] * widths
        ys = boxes[:, 1:2] + points[:, NUM_LANDMARKS:] * heights
        landmarks = np.stack([xs, ys], axis=-1).astype(np.float32)

        refined = regress_boxes(boxes, regions)
        valid = finite_boxes_mask(refined)
        refined, scores, landmarks = refined[valid], scores[valid].astype(np.float32), landmarks[valid]

        kept = nms_indices(refined, scores, NMS_STAGE3, use_min=True)
        logger.debug("mtcnn stage 3: %d detections", len(kept))
        return refined[kept], scores[kept], landmarks[kept]

    @staticmethod
    def _patches(image: NDArray[np.float32], boxes: NDArray[np.float32], size: int) -> list[NDArray[np.float32]]:
        return [extract_patch(image, Rect.from_corners(*(float(v) for v in box)), size, size) for box in boxes]
