"""
Request schemas for the facevoice API.
"""

from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


class NormalizedBox(BaseModel):
    """Bounding box in normalized frame coordinates (top-left origin)."""

    x: float = Field(..., description="Left edge, fraction of frame width")
    y: float = Field(..., description="Top edge, fraction of frame height")
    width: float = Field(..., gt=0.0, le=1.0, description="Width, fraction of frame width")
    height: float = Field(..., gt=0.0, le=1.0, description="Height, fraction of frame height")

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.width, self.height)


class DetectionInput(BaseModel):
    """One face detection for a frame."""

    bbox: NormalizedBox
    confidence: float = Field(..., ge=0.0, le=1.0, description="Detector confidence")
    embedding: Optional[List[float]] = Field(
        default=None, description="Face embedding, if the detector already computed one"
    )
    landmarks: Optional[List[Tuple[float, float]]] = Field(
        default=None,
        description="Five facial landmarks in pixel coordinates (eyes, nose, mouth corners)",
    )


class FrameRequest(BaseModel):
    """Request body for POST /frames."""

    frame_index: int = Field(..., ge=0, description="Monotonic frame index in the stream")
    timestamp: Optional[float] = Field(default=None, ge=0.0, description="Stream time in seconds")
    detections: List[DetectionInput] = Field(default_factory=list)
    image_base64: Optional[str] = Field(
        default=None,
        description="Encoded frame (JPEG/PNG, base64). Required for speaking detection and embedding.",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "frame_index": 8,
                "timestamp": 0.32,
                "detections": [
                    {
                        "bbox": {"x": 0.41, "y": 0.22, "width": 0.12, "height": 0.18},
                        "confidence": 0.93,
                    }
                ],
            }
        }


class VoiceSegmentRequest(BaseModel):
    """Request body for POST /voice-segments and POST /pairing/score."""

    start_time: float = Field(..., ge=0.0, description="Segment start, stream seconds")
    end_time: float = Field(..., ge=0.0, description="Segment end, stream seconds")
    embedding: List[float] = Field(..., min_length=1, description="Speaker embedding from the diarizer")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0, description="Diarizer confidence")
    speaker_label: Optional[str] = Field(default=None, description="Diarizer's own local label")

    @model_validator(mode="after")
    def check_window(self) -> "VoiceSegmentRequest":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "start_time": 12.4,
                "end_time": 14.9,
                "embedding": [0.12, -0.03, 0.44],
                "confidence": 0.87,
            }
        }
