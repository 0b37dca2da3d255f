"""Pydantic request/response schemas for the faceapix API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class LandmarkPoint(BaseModel):
    """A landmark position relative to the image size."""

    x: float
    y: float


class DetectedFace(BaseModel):
    """A single detected face with bounding box, score, landmarks and descriptor."""

    x: float = Field(description="Relative bounding box x position (0.0-1.0)")
    y: float = Field(description="Relative bounding box y position (0.0-1.0)")
    width: float = Field(description="Relative bounding box width (0.0-1.0)")
    height: float = Field(description="Relative bounding box height (0.0-1.0)")
    score: float = Field(ge=0.0, le=1.0, description="Detection confidence (0.0-1.0)")
    landmarks: list[LandmarkPoint] | None = Field(default=None, description="68 relative landmark points")
    descriptor: list[float] | None = Field(default=None, description="Face descriptor (128 dimensions)")
    error: str | None = Field(default=None, description="Why landmarks or descriptor failed for this face")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    live_tensors: int


class ModelInfo(BaseModel):
    """Information about a prepackaged weight set."""

    name: str
    network: str = Field(description="Network the weights belong to")
    status: str = Field(description="Weight status: 'active' or 'available'")
    quantized: bool = Field(description="Whether a quantized manifest is published")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
