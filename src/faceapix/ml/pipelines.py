"""All-faces pipelines: detector -> landmarks -> aligned descriptor.

One orchestrator per detector. ``run`` is an async generator yielding one
``FaceResult`` per detection; every buffer a face needs is released before
its result is yielded, so abandoning the generator leaks nothing.

Per-face failures (cropping, landmarks, alignment, descriptor) are attached
to that face's result and do not stop the remaining faces. Everything else
propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from faceapix.errors import PerFaceProcessingFailure
from faceapix.ml.face_detector import DetectOptions
from faceapix.ml.face_landmarks import FaceLandmarks68
from faceapix.ml.face_landmarks import INPUT_SIZE as LANDMARK_INPUT_SIZE
from faceapix.ml.face_recognizer import INPUT_SIZE as RECOGNITION_INPUT_SIZE
from faceapix.ml.preprocessing import align_face, crop_face, validate_image
from faceapix.ml.tensors import TensorScope, default_registry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from numpy.typing import NDArray

    from faceapix.ml.face_detector import FaceDetector
    from faceapix.ml.face_landmarks import FaceLandmarkNet, FaceLandmarks
    from faceapix.ml.face_recognizer import FaceRecognitionNet
    from faceapix.ml.geometry import FaceDetection, Rect
    from faceapix.ml.mtcnn import Mtcnn
    from faceapix.ml.ssd_mobilenetv1 import SsdMobilenetv1
    from faceapix.ml.tensors import Tensor, TensorRegistry
    from faceapix.ml.tiny_yolov2 import TinyYolov2

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineOptions:
    """Per-call pipeline options.

    Attributes:
        min_confidence: Detector score threshold.
        max_results: Cap on returned faces.
        padding_factor: Fraction of the face box added around it before cropping.
        with_landmarks: Run the landmark network and align the recognition crop.
        with_descriptor: Run the recognition network.
        iou_threshold: Suppression threshold; None uses the detector's default.
    """

    min_confidence: float = 0.5
    max_results: int = 100
    padding_factor: float = 0.0
    with_landmarks: bool = True
    with_descriptor: bool = True
    iou_threshold: float | None = None

    def __post_init__(self) -> None:
        if self.padding_factor < 0:
            raise ValueError(f"padding_factor must be >= 0, got {self.padding_factor}")

    def detect_options(self, defaults: DetectOptions) -> DetectOptions:
        return DetectOptions(
            min_confidence=self.min_confidence,
            max_results=self.max_results,
            iou_threshold=defaults.iou_threshold if self.iou_threshold is None else self.iou_threshold,
        )


@dataclass(frozen=True)
class FaceResult:
    """One face produced by a pipeline.

    ``landmarks`` and ``descriptor`` are None when their stage was not
    requested, or when ``error`` reports that this face failed.
    """

    detection: FaceDetection
    landmarks: FaceLandmarks | None = None
    aligned_rect: Rect | None = None
    descriptor: NDArray[np.float32] | None = None
    error: PerFaceProcessingFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AllFacesPipeline:
    """Shared orchestration for the per-detector pipelines."""

    def __init__(
        self,
        detector: FaceDetector,
        landmark_net: FaceLandmarkNet | None = None,
        recognition_net: FaceRecognitionNet | None = None,
        *,
        registry: TensorRegistry | None = None,
    ) -> None:
        self.detector = detector
        self.landmark_net = landmark_net
        self.recognition_net = recognition_net
        self._registry = registry if registry is not None else default_registry

    async def run(
        self,
        image: NDArray[np.generic] | Tensor,
        options: PipelineOptions | None = None,
    ) -> AsyncIterator[FaceResult]:
        """Detect faces and yield one result per face, best detection first.

        Raises:
            InvalidImageInput: If the image is empty or not three-channel.
            ValueError: If a requested stage has no network configured.
        """
        options = options if options is not None else PipelineOptions()
        if options.with_landmarks and self.landmark_net is None:
            raise ValueError("with_landmarks requested but no landmark network is configured")
        if options.with_descriptor and self.recognition_net is None:
            raise ValueError("with_descriptor requested but no recognition network is configured")

        pixels = validate_image(image)
        candidates = await self._detect(pixels, options)
        logger.debug("%s: %d faces", type(self).__name__, len(candidates))

        for detection, seed in candidates:
            yield await self._process_face(pixels, detection, seed, options)

    async def all_faces(
        self,
        image: NDArray[np.generic] | Tensor,
        options: PipelineOptions | None = None,
    ) -> list[FaceResult]:
        return [result async for result in self.run(image, options)]

    async def _detect(
        self,
        image: NDArray[np.float32],
        options: PipelineOptions,
    ) -> list[tuple[FaceDetection, Rect | None]]:
        """Return detections, each with an optional landmark crop region."""
        detections = await self.detector.detect(image, options.detect_options(self.detector.default_options))
        return [(detection, None) for detection in detections]

    async def _process_face(
        self,
        image: NDArray[np.float32],
        detection: FaceDetection,
        seed: Rect | None,
        options: PipelineOptions,
    ) -> FaceResult:
        landmarks: FaceLandmarks68 | None = None
        aligned_rect: Rect | None = None
        descriptor: NDArray[np.float32] | None = None
        stage = "crop"
        height, width = image.shape[:2]

        with TensorScope(self._registry) as scope:
            try:
                if options.with_landmarks:
                    assert self.landmark_net is not None
                    crop = crop_face(
                        image,
                        seed if seed is not None else detection.rect,
                        LANDMARK_INPUT_SIZE,
                        padding_factor=options.padding_factor,
                    )
                    patch = scope.track(crop.patch)
                    stage = "landmarks"
                    local = await self.landmark_net.predict(patch)
                    relative = local.as_array() / LANDMARK_INPUT_SIZE
                    landmarks = FaceLandmarks68(tuple(crop.to_image_points(relative)), width, height)

                if options.with_descriptor:
                    assert self.recognition_net is not None
                    stage = "align"
                    if landmarks is not None:
                        aligned_rect = landmarks.align()
                        face = align_face(image, aligned_rect, landmarks.rotation, RECOGNITION_INPUT_SIZE)
                    else:
                        face = crop_face(
                            image,
                            detection.rect,
                            RECOGNITION_INPUT_SIZE,
                            padding_factor=options.padding_factor,
                        ).patch
                    aligned = scope.track(face)
                    stage = "descriptor"
                    descriptor = await self.recognition_net.compute_descriptor(aligned)
                    if not np.all(np.isfinite(descriptor)):
                        raise PerFaceProcessingFailure(stage, "descriptor contains non-finite values")
            except PerFaceProcessingFailure as exc:
                return self._failed(detection, exc)
            except (ValueError, cv2.error) as exc:
                return self._failed(detection, PerFaceProcessingFailure(stage, str(exc)))

        return FaceResult(detection, landmarks=landmarks, aligned_rect=aligned_rect, descriptor=descriptor)

    @staticmethod
    def _failed(detection: FaceDetection, error: PerFaceProcessingFailure) -> FaceResult:
        logger.warning("Face at %s failed: %s", detection.rect, error)
        return FaceResult(detection, error=error)


class AllFacesSsdMobilenetv1(AllFacesPipeline):
    """SSD MobileNetV1 -> landmarks -> descriptor."""

    def __init__(
        self,
        detector: SsdMobilenetv1,
        landmark_net: FaceLandmarkNet | None = None,
        recognition_net: FaceRecognitionNet | None = None,
        *,
        registry: TensorRegistry | None = None,
    ) -> None:
        super().__init__(detector, landmark_net, recognition_net, registry=registry)


class AllFacesTinyYolov2(AllFacesPipeline):
    """Tiny YOLOv2 -> landmarks -> descriptor."""

    def __init__(
        self,
        detector: TinyYolov2,
        landmark_net: FaceLandmarkNet | None = None,
        recognition_net: FaceRecognitionNet | None = None,
        *,
        registry: TensorRegistry | None = None,
    ) -> None:
        super().__init__(detector, landmark_net, recognition_net, registry=registry)


class AllFacesMtcnn(AllFacesPipeline):
    """MTCNN -> landmarks -> descriptor.

    The landmark crop is seeded from the box aligned on MTCNN's five points
    instead of the detection box.
    """

    detector: Mtcnn

    def __init__(
        self,
        detector: Mtcnn,
        landmark_net: FaceLandmarkNet | None = None,
        recognition_net: FaceRecognitionNet | None = None,
        *,
        registry: TensorRegistry | None = None,
    ) -> None:
        super().__init__(detector, landmark_net, recognition_net, registry=registry)

    async def _detect(
        self,
        image: NDArray[np.float32],
        options: PipelineOptions,
    ) -> list[tuple[FaceDetection, Rect | None]]:
        results = await self.detector.detect_with_landmarks(
            image, options.detect_options(self.detector.default_options)
        )
        candidates: list[tuple[FaceDetection, Rect | None]] = []
        for result in results:
            seed = result.landmarks.align()
            candidates.append((result.detection, None if seed.is_empty else seed))
        return candidates
