"""
Services for the facevoice pipeline.

Includes:
- Tracking services (Kalman filter, face tracker, alignment)
- Speaking detection services (score buffer, slot pool, scheduler)
- Speaker services (online clustering, audio-visual pairing, attribution worker)
"""

from facevoice.services.alignment import SimilarityTransform, align_face, estimate_similarity_transform
from facevoice.services.attribution import AttributionWorker
from facevoice.services.face_tracker import Detection, FaceTracker, Track, TrackStatus
from facevoice.services.kalman_filter import BoxKalmanFilter, KalmanFilter
from facevoice.services.pairing import SpeakerTrackAssociation, VoiceSegment, rank_tracks, soft_iou
from facevoice.services.pipeline import FacePipeline, SnapshotChannel
from facevoice.services.score_buffer import ScoreBuffer, ScoreSeries
from facevoice.services.scoring_pool import ScoringSlot, ScoringSlotPool
from facevoice.services.speaker_clustering import OnlineSpeakerClustering, SpeakerCluster, closest
from facevoice.services.speaking_scheduler import SpeakingScheduler

__all__ = [
    # Tracking
    "KalmanFilter",
    "BoxKalmanFilter",
    "Detection",
    "Track",
    "TrackStatus",
    "FaceTracker",
    "SimilarityTransform",
    "estimate_similarity_transform",
    "align_face",
    # Speaking detection
    "ScoreBuffer",
    "ScoreSeries",
    "ScoringSlot",
    "ScoringSlotPool",
    "SpeakingScheduler",
    "FacePipeline",
    "SnapshotChannel",
    # Speakers
    "SpeakerCluster",
    "OnlineSpeakerClustering",
    "closest",
    "VoiceSegment",
    "soft_iou",
    "rank_tracks",
    "SpeakerTrackAssociation",
    "AttributionWorker",
]
