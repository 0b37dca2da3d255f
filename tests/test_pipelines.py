"""Tests for the all-faces pipelines."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest
from helpers import FixedDetector, gradient_image, make_weights

from faceapix.errors import InvalidImageInput, PerFaceProcessingFailure
from faceapix.ml import face_recognizer
from faceapix.ml.face_detector import DetectOptions
from faceapix.ml.face_landmarks import FaceLandmarkNet, FaceLandmarks68
from faceapix.ml.face_recognizer import FaceRecognitionNet
from faceapix.ml.geometry import Point, Rect
from faceapix.ml.mtcnn import Mtcnn
from faceapix.ml.pipelines import (
    AllFacesMtcnn,
    AllFacesPipeline,
    AllFacesTinyYolov2,
    PipelineOptions,
)
from faceapix.ml.tiny_yolov2 import TinyYolov2

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceapix.ml.tensors import TensorRegistry

FACE = Rect(20, 20, 40, 40)


@pytest.fixture()
def landmark_net(registry: TensorRegistry, landmark_weights: NDArray[np.float32]) -> FaceLandmarkNet:
    net = FaceLandmarkNet(registry=registry)
    net.load(landmark_weights)
    return net


@pytest.fixture()
def recognition_net(registry: TensorRegistry, recognition_weights: NDArray[np.float32]) -> FaceRecognitionNet:
    net = FaceRecognitionNet(registry=registry)
    net.load(recognition_weights)
    return net


def _pipeline(
    registry: TensorRegistry,
    landmark_net: FaceLandmarkNet,
    recognition_net: FaceRecognitionNet,
    *rects: Rect,
) -> AllFacesPipeline:
    return AllFacesPipeline(FixedDetector(rects or (FACE,)), landmark_net, recognition_net, registry=registry)


class TestPipelineOptions:
    def test_detect_options_fall_back_to_detector_default(self) -> None:
        options = PipelineOptions(min_confidence=0.3, max_results=7)
        detect = options.detect_options(DetectOptions(iou_threshold=0.4))
        assert detect == DetectOptions(min_confidence=0.3, max_results=7, iou_threshold=0.4)

    def test_explicit_iou_threshold_wins(self) -> None:
        detect = PipelineOptions(iou_threshold=0.2).detect_options(DetectOptions(iou_threshold=0.4))
        assert detect.iou_threshold == 0.2

    def test_negative_padding_rejected(self) -> None:
        with pytest.raises(ValueError, match="padding_factor"):
            PipelineOptions(padding_factor=-0.1)


class TestAllFacesPipeline:
    async def test_full_result(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        pipeline = _pipeline(registry, landmark_net, recognition_net)

        (result,) = await pipeline.all_faces(image)

        assert result.ok
        assert result.detection.rect == FACE
        assert isinstance(result.landmarks, FaceLandmarks68)
        assert (result.landmarks.image_width, result.landmarks.image_height) == (96, 96)
        assert result.landmarks.left_eye[0] == Point(35.0, 35.0)
        assert result.landmarks.right_eye[0] == Point(45.0, 35.0)
        assert result.landmarks.mouth[0] == Point(40.0, 50.0)
        assert result.aligned_rect == Rect(23, 25, 33, 33)
        assert result.descriptor is not None
        assert result.descriptor.shape == (128,)

    async def test_landmarks_stay_inside_face_region(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        # a wide box is padded to a square; the template's corner points land in the padding
        pipeline = _pipeline(registry, landmark_net, recognition_net, Rect(10, 30, 60, 20))
        (result,) = await pipeline.all_faces(image, PipelineOptions(with_descriptor=False))
        assert result.landmarks is not None
        for point in result.landmarks.points:
            assert 10 <= point.x <= 70
            assert 30 <= point.y <= 50

    async def test_stages_not_requested_are_none(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        pipeline = _pipeline(registry, landmark_net, recognition_net)
        (result,) = await pipeline.all_faces(image, PipelineOptions(with_landmarks=False, with_descriptor=False))
        assert result.ok
        assert result.landmarks is None
        assert result.aligned_rect is None
        assert result.descriptor is None

    async def test_descriptor_without_landmarks_uses_detection_box(
        self,
        registry: TensorRegistry,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        pipeline = AllFacesPipeline(FixedDetector([FACE]), None, recognition_net, registry=registry)
        (result,) = await pipeline.all_faces(image, PipelineOptions(with_landmarks=False))
        assert result.landmarks is None
        assert result.aligned_rect is None
        assert result.descriptor is not None

    async def test_missing_network_raises(
        self,
        registry: TensorRegistry,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        pipeline = AllFacesPipeline(FixedDetector([FACE]), None, recognition_net, registry=registry)
        with pytest.raises(ValueError, match="landmark network"):
            await pipeline.all_faces(image)

    async def test_invalid_image_raises(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
    ) -> None:
        pipeline = _pipeline(registry, landmark_net, recognition_net)
        with pytest.raises(InvalidImageInput):
            await pipeline.all_faces(np.zeros((0, 10, 3), dtype=np.uint8))

    async def test_no_faces(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        pipeline = AllFacesPipeline(FixedDetector([]), landmark_net, recognition_net, registry=registry)
        baseline = registry.memory()
        assert await pipeline.all_faces(image) == []
        assert registry.memory() == baseline

    async def test_detector_options_forwarded(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        detector = FixedDetector([FACE, Rect(60, 60, 20, 20), Rect(0, 0, 10, 10)], scores=[0.9, 0.4, 0.8])
        pipeline = AllFacesPipeline(detector, landmark_net, recognition_net, registry=registry)
        results = await pipeline.all_faces(image, PipelineOptions(min_confidence=0.5, max_results=1))
        assert [r.detection.rect for r in results] == [FACE]


class TestPerFaceFailures:
    async def test_degenerate_face_fails_alone(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        pipeline = _pipeline(registry, landmark_net, recognition_net, Rect(5, 5, 0, 0), FACE)
        baseline = registry.memory()

        failed, ok = await pipeline.all_faces(image)

        assert not failed.ok
        assert isinstance(failed.error, PerFaceProcessingFailure)
        assert failed.error.stage == "crop"
        assert failed.landmarks is None
        assert failed.descriptor is None
        assert ok.ok
        assert ok.descriptor is not None
        assert registry.memory() == baseline

    async def test_non_finite_descriptor_reported(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        image: NDArray[np.uint8],
    ) -> None:
        broken = FaceRecognitionNet(registry=registry)
        broken.load(make_weights(face_recognizer.build_layout(), {"fc": np.nan}))
        pipeline = _pipeline(registry, landmark_net, broken)
        baseline = registry.memory()

        (result,) = await pipeline.all_faces(image)

        assert result.error is not None
        assert result.error.stage == "descriptor"
        assert "non-finite" in str(result.error)
        assert result.landmarks is None
        assert registry.memory() == baseline


class TestBufferLifetime:
    async def test_repeated_runs_leak_nothing(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        pipeline = _pipeline(registry, landmark_net, recognition_net, FACE, Rect(50, 10, 30, 30))
        baseline = registry.memory()
        for _ in range(3):
            await pipeline.all_faces(image)
        assert registry.memory() == baseline

    async def test_abandoned_generator_leaks_nothing(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        pipeline = _pipeline(registry, landmark_net, recognition_net, FACE, Rect(50, 10, 30, 30))
        baseline = registry.memory()

        results = pipeline.run(image)
        first = await anext(results)
        await results.aclose()

        assert first.ok
        assert registry.memory() == baseline

    async def test_dispose_after_run_frees_all_parameters(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        image: NDArray[np.uint8],
    ) -> None:
        await _pipeline(registry, landmark_net, recognition_net).all_faces(image)
        landmark_net.dispose()
        recognition_net.dispose()
        assert registry.memory().num_tensors == 0


class TestDetectorPipelines:
    async def test_tiny_yolov2_end_to_end(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        yolo_weights: NDArray[np.float32],
    ) -> None:
        detector = TinyYolov2(input_size=64, registry=registry)
        detector.load(yolo_weights)
        pipeline = AllFacesTinyYolov2(detector, landmark_net, recognition_net, registry=registry)
        baseline = registry.memory()

        results = await pipeline.all_faces(gradient_image(64, 64), PipelineOptions(min_confidence=0.9))

        assert len(results) == 2
        assert all(r.ok and r.landmarks is not None and r.descriptor is not None for r in results)
        assert registry.memory() == baseline

    async def test_mtcnn_without_faces(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        mtcnn_zero_weights: NDArray[np.float32],
    ) -> None:
        detector = Mtcnn(registry=registry)
        detector.load(mtcnn_zero_weights)
        pipeline = AllFacesMtcnn(detector, landmark_net, recognition_net, registry=registry)
        assert await pipeline.all_faces(gradient_image(48, 48)) == []

    async def test_mtcnn_end_to_end(
        self,
        registry: TensorRegistry,
        landmark_net: FaceLandmarkNet,
        recognition_net: FaceRecognitionNet,
        mtcnn_confident_weights: NDArray[np.float32],
    ) -> None:
        detector = Mtcnn(registry=registry)
        detector.load(mtcnn_confident_weights)
        pipeline = AllFacesMtcnn(detector, landmark_net, recognition_net, registry=registry)
        baseline = registry.memory()

        results = await pipeline.all_faces(gradient_image(24, 24))

        assert results
        for result in results:
            # all five MTCNN points coincide, so the seeded crop is empty and the detection box is used
            assert result.ok
            assert result.landmarks is not None
        assert registry.memory() == baseline
