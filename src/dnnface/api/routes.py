"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from dnnface.api.middleware import verify_api_key
from dnnface.api.schemas import (
    DetectedFace,
    DetectFacesRequest,
    ErrorResponse,
    FaceLandmarks,
    FeatureMap,
    HealthResponse,
    Point,
    PriorsResponse,
)
from dnnface.errors import InvalidInputError
from dnnface.ml.decoder import check_outputs
from dnnface.ml.face_detector import FaceDetection, FaceDetector
from dnnface.ml.priors import MIN_SIZES, STEPS, count_priors, feature_map_sizes

if TYPE_CHECKING:
    from dnnface.config import Settings
    from dnnface.ml.inference import InferencePool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_detector(request: Request) -> FaceDetector:
    detector: FaceDetector = request.app.state.detector
    return detector


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _to_schema(face: FaceDetection) -> DetectedFace:
    x, y, width, height = face.box
    lm = face.landmarks
    return DetectedFace(
        x=x,
        y=y,
        width=width,
        height=height,
        score=face.score,
        landmarks=FaceLandmarks(
            right_eye=Point(x=lm.right_eye[0], y=lm.right_eye[1]),
            left_eye=Point(x=lm.left_eye[0], y=lm.left_eye[1]),
            nose_tip=Point(x=lm.nose_tip[0], y=lm.nose_tip[1]),
            mouth_right=Point(x=lm.mouth_right[0], y=lm.mouth_right[1]),
            mouth_left=Point(x=lm.mouth_left[0], y=lm.mouth_left[1]),
        ),
    )


def _run_detection(detector: FaceDetector, settings: Settings, body: DetectFacesRequest) -> list[FaceDetection]:
    if detector.input_size != (body.image_width, body.image_height):
        logger.info(
            "Request resolution %dx%d differs from configured %dx%d, building priors for it",
            body.image_width,
            body.image_height,
            *detector.input_size,
        )
        # Reject mismatched outputs before paying for a new prior layout.
        check_outputs(count_priors(body.image_width, body.image_height), body.loc, body.conf, body.iou)
        detector = FaceDetector(
            body.image_width,
            body.image_height,
            score_threshold=settings.score_threshold,
            nms_threshold=settings.nms_threshold,
            top_k=settings.top_k,
        )
    return detector.detect(
        body.loc,
        body.conf,
        body.iou,
        score_threshold=body.score_threshold,
        nms_threshold=body.nms_threshold,
        top_k=body.top_k,
    )


@router.post(
    "/detect-faces",
    response_model=list[DetectedFace],
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Decode raw detector outputs into faces",
)
async def detect_faces(body: DetectFacesRequest, request: Request) -> list[DetectedFace] | JSONResponse:
    """Decode loc/conf/iou outputs, suppress overlaps, and return ranked faces."""
    settings = _get_settings(request)
    detector = _get_detector(request)
    pool = _get_inference_pool(request)

    try:
        faces = await pool.run(_run_detection, detector, settings, body)
    except InvalidInputError as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc)},
        )
    except TimeoutError:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Too many concurrent requests, try again later"},
        )

    return [_to_schema(face) for face in faces]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    detector = _get_detector(request)
    pool = _get_inference_pool(request)
    width, height = detector.input_size
    return HealthResponse(
        status="ok",
        input_width=width,
        input_height=height,
        num_priors=len(detector.priors),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        rejected_requests=pool.rejected_count,
    )


@router.get(
    "/priors",
    response_model=PriorsResponse,
    summary="Describe the prior layout",
)
async def describe_priors(request: Request) -> PriorsResponse:
    """Return the prior layout the configured detector expects its outputs in."""
    priors = _get_detector(request).priors
    feature_maps = [
        FeatureMap(step=step, width=fm_w, height=fm_h, min_sizes=list(sizes))
        for (fm_w, fm_h), step, sizes in zip(feature_map_sizes(priors.width, priors.height), STEPS, MIN_SIZES)
    ]
    return PriorsResponse(
        input_width=priors.width,
        input_height=priors.height,
        layout_version=priors.layout_version,
        num_priors=len(priors),
        feature_maps=feature_maps,
    )
