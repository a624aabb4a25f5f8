"""
Speaker cluster and audio-visual pairing endpoints.
"""

import asyncio
import logging

import numpy as np
from fastapi import APIRouter, HTTPException, Request

from facevoice.schemas.requests import VoiceSegmentRequest
from facevoice.schemas.responses import (
    AttributionResponse,
    PairingCandidateResponse,
    PairingResponse,
    SpeakerResponse,
    SpeakersResponse,
)
from facevoice.services.attribution import AttributionWorker
from facevoice.services.pairing import VoiceSegment

logger = logging.getLogger(__name__)

router = APIRouter()


def get_worker(request: Request) -> AttributionWorker:
    worker = getattr(request.app.state, "attribution_worker", None)
    if worker is None:
        raise HTTPException(status_code=503, detail="Attribution worker not initialized")
    return worker


def _to_segment(body: VoiceSegmentRequest) -> VoiceSegment:
    return VoiceSegment(
        start_time=body.start_time,
        end_time=body.end_time,
        embedding=np.asarray(body.embedding, dtype=np.float32),
        confidence=body.confidence,
        speaker_label=body.speaker_label,
    )


@router.get("/speakers", response_model=SpeakersResponse)
async def list_speakers(request: Request):
    """Speaker clusters with centroids and their best-matching face track."""
    worker = get_worker(request)
    mappings = worker.association.mappings()
    return SpeakersResponse(
        speakers=[
            SpeakerResponse(
                cluster_id=cluster.cluster_id,
                count=cluster.count,
                centroid=cluster.centroid.tolist(),
                track_id=mappings.get(cluster.cluster_id),
            )
            for cluster in worker.clustering.clusters
        ]
    )


@router.post("/voice-segments", response_model=AttributionResponse)
async def ingest_voice_segment(body: VoiceSegmentRequest, request: Request):
    """
    Attribute one diarized segment: queue it for the attribution worker,
    which assigns it to a speaker cluster and pairs it with the tracked faces.

    Returns 503 if the worker is not consuming or its queue is full.
    """
    worker = get_worker(request)
    if not worker.is_running:
        raise HTTPException(status_code=503, detail="Attribution worker not running")
    segment = _to_segment(body)

    future = worker.submit_nowait(segment)
    if future is None:
        raise HTTPException(status_code=503, detail="Voice segment queue is full, retry later")

    try:
        attribution = await asyncio.shield(future)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except asyncio.CancelledError:
        if future.cancelled():
            raise HTTPException(status_code=503, detail="Attribution worker stopped")
        raise

    return AttributionResponse(
        cluster_id=attribution.cluster_id,
        start_time=segment.start_time,
        end_time=segment.end_time,
        candidates=[
            PairingCandidateResponse(track_id=c.track_id, score=c.score) for c in attribution.candidates
        ],
        best_track_id=attribution.best_track_id,
    )


@router.post("/pairing/score", response_model=PairingResponse)
async def score_voice_segment(body: VoiceSegmentRequest, request: Request):
    """Rank tracked faces for a segment without updating speaker clusters."""
    worker = get_worker(request)
    segment = _to_segment(body)
    candidates = worker.score_segment(segment)
    return PairingResponse(
        start_time=segment.start_time,
        end_time=segment.end_time,
        candidates=[PairingCandidateResponse(track_id=c.track_id, score=c.score) for c in candidates],
    )
