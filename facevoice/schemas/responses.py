"""
Response schemas for the facevoice API.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool = Field(..., description="Whether the service can take frames and segments")
    tracking: str = Field(..., description="Frame pipeline status")
    speaking_detection: str = Field(..., description="Scoring pool status")
    attribution: str = Field(..., description="Diarization worker status")


class BoxResponse(BaseModel):
    x: float
    y: float
    width: float
    height: float


class TrackResponse(BaseModel):
    """One tracked face."""

    track_id: int = Field(..., description="Persistent ID for this face")
    status: str = Field(..., description="active or inactive")
    bbox: BoxResponse = Field(..., description="Filtered box estimate, normalized")
    confidence: float = Field(..., description="Latest detection confidence")
    misses: int = Field(..., description="Consecutive frames without a detection")
    score_count: int = Field(..., description="Speaking samples in the rolling buffer")
    latest_score: Optional[float] = Field(default=None, description="Most recent speaking probability")


class TracksResponse(BaseModel):
    frame_index: Optional[int] = Field(default=None, description="Last processed frame")
    tracks: List[TrackResponse] = Field(default_factory=list)


class FrameResponse(BaseModel):
    """Result of POST /frames."""

    frame_index: int
    active_tracks: List[TrackResponse] = Field(default_factory=list)
    new_track_ids: List[int] = Field(default_factory=list)
    reidentified_track_ids: List[int] = Field(default_factory=list)
    removed_track_ids: List[int] = Field(default_factory=list)
    scored: Dict[int, float] = Field(default_factory=dict, description="Speaking probabilities this frame")
    failed_track_ids: List[int] = Field(default_factory=list)
    deferred_track_ids: List[int] = Field(default_factory=list)


class SpeakerResponse(BaseModel):
    """One speaker cluster."""

    cluster_id: str
    count: int = Field(..., description="Voice segments merged into this speaker")
    centroid: List[float]
    track_id: Optional[int] = Field(default=None, description="Face track with the most pairing evidence")


class SpeakersResponse(BaseModel):
    speakers: List[SpeakerResponse] = Field(default_factory=list)


class PairingCandidateResponse(BaseModel):
    track_id: int
    score: float = Field(..., ge=0.0, le=1.0, description="Soft IoU between voice segment and track")


class PairingResponse(BaseModel):
    """Result of POST /pairing/score."""

    start_time: float
    end_time: float
    candidates: List[PairingCandidateResponse] = Field(default_factory=list)


class AttributionResponse(BaseModel):
    """Result of POST /voice-segments."""

    cluster_id: Optional[str]
    start_time: float
    end_time: float
    candidates: List[PairingCandidateResponse] = Field(default_factory=list)
    best_track_id: Optional[int] = None
