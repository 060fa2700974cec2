"""Pydantic request/response schemas for the dnnface API."""

from __future__ import annotations

from pydantic import BaseModel, Field

# Largest accepted input side; bounds the priors a request can make the server build.
MAX_IMAGE_SIDE = 8192


class DetectFacesRequest(BaseModel):
    """Raw detector outputs for one image, plus optional threshold overrides."""

    image_width: int = Field(gt=0, le=MAX_IMAGE_SIDE, description="Network input width in pixels")
    image_height: int = Field(gt=0, le=MAX_IMAGE_SIDE, description="Network input height in pixels")
    loc: list[list[float]] = Field(description="Per-anchor box and landmark deltas (N x 14)")
    conf: list[list[float]] = Field(description="Per-anchor background and face scores (N x 2)")
    iou: list[float] = Field(description="Per-anchor IoU-quality estimates (N)")
    score_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    nms_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    top_k: int | None = Field(default=None, ge=0)


class Point(BaseModel):
    """A 2D point in pixel coordinates."""

    x: float
    y: float


class FaceLandmarks(BaseModel):
    """The five facial landmarks of a detected face."""

    right_eye: Point
    left_eye: Point
    nose_tip: Point
    mouth_right: Point
    mouth_left: Point


class DetectedFace(BaseModel):
    """A single detected face with bounding box, landmarks, and score."""

    x: float = Field(description="Bounding box left edge in pixels")
    y: float = Field(description="Bounding box top edge in pixels")
    width: float = Field(description="Bounding box width in pixels")
    height: float = Field(description="Bounding box height in pixels")
    score: float = Field(description="Fused detection confidence (0.0-1.0)")
    landmarks: FaceLandmarks


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    input_width: int
    input_height: int
    num_priors: int
    concurrent_requests: int
    queue_depth: int
    rejected_requests: int


class FeatureMap(BaseModel):
    """One detection level of the prior layout."""

    step: int
    width: int
    height: int
    min_sizes: list[int]


class PriorsResponse(BaseModel):
    """Prior layout for the configured input resolution."""

    input_width: int
    input_height: int
    layout_version: int
    num_priors: int
    feature_maps: list[FeatureMap]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
