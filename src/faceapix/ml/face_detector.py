"""Face detector protocol and the selection step shared by all detectors.

Implementations: SSD MobileNetV1, Tiny YOLOv2 (regular or separable
convolutions), MTCNN.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from faceapix.ml.geometry import FaceDetection, Rect, finite_boxes_mask, nms_indices
from faceapix.ml.network import Network

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceapix.ml.tensors import Tensor


@dataclass(frozen=True)
class DetectOptions:
    """Per-call detection options."""

    min_confidence: float = 0.5
    max_results: int = 100
    iou_threshold: float = 0.5

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be in [0, 1], got {self.min_confidence}")
        if self.max_results < 1:
            raise ValueError(f"max_results must be >= 1, got {self.max_results}")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise ValueError(f"iou_threshold must be in [0, 1], got {self.iou_threshold}")


class FaceDetector(Network, Protocol):
    """Protocol for face detection networks."""

    default_options: DetectOptions

    async def detect(
        self,
        image: NDArray[np.generic] | Tensor,
        options: DetectOptions | None = None,
    ) -> list[FaceDetection]:
        """Detect faces in an image.

        Args:
            image: HxWx3 RGB array or tensor.
            options: Score threshold, result cap and suppression threshold.

        Returns:
            Detections with ``score >= min_confidence``, best first, with no two
            boxes overlapping by more than ``iou_threshold``.

        Raises:
            InvalidImageInput: If the image is empty or not three-channel.
        """
        ...


def select_candidates(
    boxes: NDArray[np.floating],
    scores: NDArray[np.floating],
    image_width: int,
    image_height: int,
    options: DetectOptions,
    *,
    use_min: bool = False,
) -> tuple[NDArray[np.intp], NDArray[np.float32], NDArray[np.float32]]:
    """Threshold, clip, suppress and cap decoded candidates.

    Args:
        boxes: ``(N, 4)`` absolute ``(x_min, y_min, x_max, y_max)`` boxes.
        scores: ``(N,)`` scores in ``[0, 1]``.
        image_width: Image width used for clipping.
        image_height: Image height used for clipping.
        options: Detection options.
        use_min: Suppress by intersection over the smaller area.

    Returns:
        Indices of the kept candidates (best first), the clipped boxes and
        the scores, both as float32 arrays aligned with the input rows.
    """
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float32).reshape(-1)

    boxes = np.clip(boxes, 0.0, [image_width, image_height, image_width, image_height]).astype(np.float32)
    candidates = np.flatnonzero(finite_boxes_mask(boxes) & (scores >= options.min_confidence))

    kept = nms_indices(boxes[candidates], scores[candidates], options.iou_threshold, use_min=use_min)
    return candidates[np.asarray(kept[: options.max_results], dtype=np.intp)], boxes, scores


def select_detections(
    boxes: NDArray[np.floating],
    scores: NDArray[np.floating],
    image_width: int,
    image_height: int,
    options: DetectOptions,
    *,
    use_min: bool = False,
) -> list[FaceDetection]:
    """Run :func:`select_candidates` and wrap the survivors as detections."""
    kept, boxes, scores = select_candidates(boxes, scores, image_width, image_height, options, use_min=use_min)
    return [
        FaceDetection(
            rect=Rect.from_corners(*(float(v) for v in boxes[i])),
            score=float(min(max(scores[i], 0.0), 1.0)),
            image_width=image_width,
            image_height=image_height,
        )
        for i in kept
    ]
