"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from faceapix.config import Settings
    from faceapix.ml.face_detector import FaceDetector
    from faceapix.ml.model_manager import ModelManager
    from faceapix.ml.network import Network, Runner

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from faceapix.api.middleware import register_exception_handlers
from faceapix.api.routes import router
from faceapix.config import get_settings
from faceapix.ml.face_landmarks import FaceLandmarkNet
from faceapix.ml.face_recognizer import FaceRecognitionNet
from faceapix.ml.inference import InferencePool
from faceapix.ml.model_manager import OnnxModelManager
from faceapix.ml.mtcnn import Mtcnn
from faceapix.ml.pipelines import AllFacesMtcnn, AllFacesPipeline, AllFacesSsdMobilenetv1, AllFacesTinyYolov2
from faceapix.ml.ssd_mobilenetv1 import SsdMobilenetv1
from faceapix.ml.tiny_yolov2 import TinyYolov2

logger = logging.getLogger(__name__)


def build_detector(settings: Settings, manager: ModelManager, runner: Runner) -> tuple[FaceDetector, str]:
    """Create the configured detector and return it with its registry weight name."""
    quantized = settings.quantized_weights
    if settings.face_detector == "tiny_yolov2":
        weights = "tiny_yolov2_separable_conv_model" if settings.tiny_yolov2_separable_conv else "tiny_yolov2_model"
        detector: FaceDetector = TinyYolov2(
            input_size=settings.tiny_yolov2_input_size,
            with_separable_conv=settings.tiny_yolov2_separable_conv,
            quantized=quantized,
            manager=manager,
            runner=runner,
        )
        return detector, weights
    if settings.face_detector == "mtcnn":
        return Mtcnn(quantized=quantized, manager=manager, runner=runner), "mtcnn_model"
    return SsdMobilenetv1(quantized=quantized, manager=manager, runner=runner), "ssd_mobilenetv1_model"


def build_pipeline(
    detector: FaceDetector,
    landmark_net: FaceLandmarkNet,
    recognition_net: FaceRecognitionNet,
) -> AllFacesPipeline:
    if isinstance(detector, Mtcnn):
        return AllFacesMtcnn(detector, landmark_net, recognition_net)
    if isinstance(detector, TinyYolov2):
        return AllFacesTinyYolov2(detector, landmark_net, recognition_net)
    if isinstance(detector, SsdMobilenetv1):
        return AllFacesSsdMobilenetv1(detector, landmark_net, recognition_net)
    raise TypeError(f"No pipeline for detector {type(detector).__name__}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load networks on startup, dispose them on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting faceapix (device=%s, max_concurrent=%s, detector=%s, quantized=%s)",
        settings.device,
        settings.max_concurrent,
        settings.face_detector,
        settings.quantized_weights,
    )

    inference_pool = InferencePool.from_settings(settings)
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager

    detector, detector_weights = build_detector(settings, model_manager, inference_pool.run)
    landmark_net = FaceLandmarkNet(
        quantized=settings.quantized_weights,
        manager=model_manager,
        runner=inference_pool.run,
    )
    recognition_net = FaceRecognitionNet(manager=model_manager, runner=inference_pool.run)
    weights: list[tuple[Network, str]] = [
        (detector, detector_weights),
        (landmark_net, "face_landmark_68_model"),
        (recognition_net, "face_recognition_model"),
    ]
    try:
        for network, name in weights:
            network.load(name)
        app.state.pipeline = build_pipeline(detector, landmark_net, recognition_net)
        app.state.networks = [network for network, _ in weights]
        app.state.active_weights = [name for _, name in weights]

        logger.info("faceapix ready")
        yield
    finally:
        logger.info("Shutting down faceapix")
        for network, _ in weights:
            network.dispose()
        model_manager.shutdown()
        inference_pool.shutdown()
        logger.info("faceapix shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="faceapix",
        description="Face detection, landmark and descriptor API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(application)
    application.include_router(router)
    return application


app = create_app()
