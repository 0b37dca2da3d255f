"""Shared fixtures: synthetic weight arrays, a test image and a fresh tensor registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest
from helpers import gradient_image, landmark_template, make_weights

from faceapix.ml import face_landmarks, face_recognizer, mtcnn, ssd_mobilenetv1, tiny_yolov2
from faceapix.ml.tensors import TensorRegistry

if TYPE_CHECKING:
    from numpy.typing import NDArray


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def registry() -> TensorRegistry:
    return TensorRegistry()


@pytest.fixture()
def image() -> NDArray[np.uint8]:
    return gradient_image(96, 96)


@pytest.fixture(scope="session")
def ssd_weights() -> NDArray[np.float32]:
    return make_weights(ssd_mobilenetv1.build_layout())


@pytest.fixture(scope="session")
def yolo_weights() -> NDArray[np.float32]:
    """Anchor 0 objectness logit of 5 in every cell, everything else zero."""
    layout = tiny_yolov2.build_layout()
    truediv = {f"conv{idx}/bn/truediv": 1.0 for idx in range(len(tiny_yolov2.CONV_CHANNELS))}
    bias = np.zeros(25, dtype=np.float32)
    bias[4] = 5.0
    return make_weights(layout, {**truediv, "conv8/bias": bias})


@pytest.fixture(scope="session")
def mtcnn_zero_weights() -> NDArray[np.float32]:
    return make_weights(mtcnn.build_layout())


@pytest.fixture(scope="session")
def mtcnn_confident_weights() -> NDArray[np.float32]:
    """Every stage scores every window as a face with probability softmax([0, 5])[1]."""
    return make_weights(
        mtcnn.build_layout(),
        {
            "pnet/conv4_1/bias": (0.0, 5.0),
            "rnet/fc2_1/bias": (0.0, 5.0),
            "onet/fc2_1/bias": (0.0, 5.0),
        },
    )


@pytest.fixture(scope="session")
def landmark_weights() -> NDArray[np.float32]:
    return make_weights(face_landmarks.build_layout(), {"fc1/bias": landmark_template()})


@pytest.fixture(scope="session")
def recognition_weights() -> NDArray[np.float32]:
    return make_weights(face_recognizer.build_layout())
