"""
Frame ingestion and track inspection endpoints.
"""

import base64
import binascii
import logging
from typing import Optional

import cv2
import numpy as np
from fastapi import APIRouter, HTTPException, Request

from facevoice.schemas.requests import FrameRequest
from facevoice.schemas.responses import BoxResponse, FrameResponse, TrackResponse, TracksResponse
from facevoice.services.face_tracker import Detection, Track
from facevoice.services.pipeline import FacePipeline

logger = logging.getLogger(__name__)

router = APIRouter()


def get_pipeline(request: Request) -> FacePipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None or pipeline.is_closed:
        raise HTTPException(status_code=503, detail="Frame pipeline not initialized")
    return pipeline


def track_to_response(track: Track) -> TrackResponse:
    x, y, w, h = track.bbox
    latest = track.scores.latest
    return TrackResponse(
        track_id=track.track_id,
        status=track.status.value,
        bbox=BoxResponse(x=x, y=y, width=w, height=h),
        confidence=track.confidence,
        misses=track.misses,
        score_count=len(track.scores),
        latest_score=latest.probability if latest else None,
    )


def _decode_image(image_base64: Optional[str]) -> Optional[np.ndarray]:
    if not image_base64:
        return None
    try:
        raw = base64.b64decode(image_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"image_base64 is not valid base64: {e}")
    image = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise HTTPException(status_code=422, detail="image_base64 could not be decoded as an image")
    return image


@router.post("/frames", response_model=FrameResponse)
async def process_frame(body: FrameRequest, request: Request):
    """
    Feed one frame's detections (and optionally the frame itself) to the tracker.

    Speaking detection runs on its own cadence and only when an image is sent.
    """
    pipeline = get_pipeline(request)
    image = _decode_image(body.image_base64)

    detections = [
        Detection(
            bbox=d.bbox.as_tuple(),
            confidence=d.confidence,
            embedding=np.asarray(d.embedding, dtype=np.float32) if d.embedding else None,
            landmarks=np.asarray(d.landmarks, dtype=np.float64) if d.landmarks else None,
        )
        for d in body.detections
    ]

    try:
        result = await pipeline.process_frame(body.frame_index, image, detections, timestamp=body.timestamp)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    scoring = result.scoring
    return FrameResponse(
        frame_index=body.frame_index,
        active_tracks=[track_to_response(t) for t in result.tracking.active_tracks],
        new_track_ids=result.tracking.new_track_ids,
        reidentified_track_ids=result.tracking.reidentified_track_ids,
        removed_track_ids=result.tracking.removed_track_ids,
        scored=scoring.scored if scoring else {},
        failed_track_ids=scoring.failed_track_ids if scoring else [],
        deferred_track_ids=scoring.deferred_track_ids if scoring else [],
    )


@router.get("/tracks", response_model=TracksResponse)
async def list_tracks(request: Request, include_inactive: bool = True):
    """Current tracks with their filtered boxes and score buffer status."""
    pipeline = get_pipeline(request)
    tracks = pipeline.tracker.tracks if include_inactive else pipeline.tracker.active_tracks
    return TracksResponse(
        frame_index=pipeline.last_frame_index,
        tracks=[track_to_response(t) for t in tracks],
    )
