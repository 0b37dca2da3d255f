"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status

from faceapix.api.middleware import verify_api_key
from faceapix.api.schemas import (
    DetectedFace,
    ErrorResponse,
    HealthResponse,
    LandmarkPoint,
    ModelInfo,
    ModelsResponse,
)
from faceapix.ml.model_manager import WEIGHT_REGISTRY
from faceapix.ml.pipelines import PipelineOptions
from faceapix.ml.preprocessing import decode_image
from faceapix.ml.tensors import memory

if TYPE_CHECKING:
    from faceapix.config import Settings
    from faceapix.ml.inference import InferencePool
    from faceapix.ml.model_manager import ModelManager
    from faceapix.ml.pipelines import AllFacesPipeline, FaceResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_pipeline(request: Request) -> AllFacesPipeline:
    pipeline: AllFacesPipeline | None = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Networks are not loaded")
    return pipeline


def _to_schema(result: FaceResult) -> DetectedFace:
    detection = result.detection
    box = detection.relative_rect
    landmarks = None
    if result.landmarks is not None:
        landmarks = [LandmarkPoint(x=p.x, y=p.y) for p in result.landmarks.relative_positions]
    return DetectedFace(
        x=box.x,
        y=box.y,
        width=box.width,
        height=box.height,
        score=detection.score,
        landmarks=landmarks,
        descriptor=None if result.descriptor is None else [float(v) for v in result.descriptor],
        error=None if result.error is None else str(result.error),
    )


@router.post(
    "/detect-faces",
    response_model=list[DetectedFace],
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Detect faces in an image",
)
async def detect_faces(
    request: Request,
    file: UploadFile,
    min_confidence: Annotated[float, Query(ge=0.0, le=1.0)] = 0.5,
    max_results: Annotated[int, Query(ge=1)] = 100,
    padding_factor: Annotated[float, Query(ge=0.0)] = 0.0,
    with_landmarks: bool = True,
    with_descriptor: bool = True,
) -> list[DetectedFace]:
    """Detect faces, then compute landmarks and descriptors for each one."""
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)

    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    image = decode_image(data, max_pixels=settings.max_image_pixels)

    options = PipelineOptions(
        min_confidence=min_confidence,
        max_results=max_results,
        padding_factor=padding_factor,
        with_landmarks=with_landmarks,
        with_descriptor=with_descriptor,
    )
    results = await pipeline.all_faces(image, options)
    logger.info("detect-faces: %d faces in %dx%d image", len(results), image.shape[1], image.shape[0])
    return [_to_schema(result) for result in results]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        live_tensors=memory().num_tensors,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List prepackaged weight sets",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the weight registry, marking the sets the current configuration uses."""
    active: set[str] = set(getattr(request.app.state, "active_weights", ()))
    models = [
        ModelInfo(
            name=spec.name,
            network=spec.network,
            status="active" if spec.name in active else "available",
            quantized=spec.quantized_manifest is not None,
        )
        for spec in WEIGHT_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
