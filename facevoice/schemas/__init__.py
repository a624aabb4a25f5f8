"""
Pydantic schemas for request/response models.
"""

from facevoice.schemas.requests import DetectionInput, FrameRequest, NormalizedBox, VoiceSegmentRequest
from facevoice.schemas.responses import (
    AttributionResponse,
    FrameResponse,
    PairingResponse,
    SpeakersResponse,
    TrackResponse,
    TracksResponse,
)

__all__ = [
    "NormalizedBox",
    "DetectionInput",
    "FrameRequest",
    "VoiceSegmentRequest",
    "TrackResponse",
    "TracksResponse",
    "FrameResponse",
    "SpeakersResponse",
    "PairingResponse",
    "AttributionResponse",
]
