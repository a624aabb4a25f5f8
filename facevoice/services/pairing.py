"""
Audio-Visual Pairing - match diarized voice segments to tracked faces.

The core score is a soft temporal IoU: the visual side contributes one
speaking probability per scored frame, the voice side contributes its
segment confidence as a uniform weight over the segment window.

    intersection = sum(p inside window) * confidence
    union        = sum(p over series) + confidence * window_length - intersection
    score        = intersection / union

Evidence is accumulated per (speaker cluster, track) so collaborators can
label a face with the voice identity that most often overlaps it.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Mapping, Optional

import numpy as np

from facevoice.services.score_buffer import ScoreSeries

logger = logging.getLogger(__name__)


@dataclass
class VoiceSegment:
    """One diarized speech interval, in stream seconds."""

    start_time: float
    end_time: float
    embedding: np.ndarray
    confidence: float = 1.0
    speaker_label: Optional[str] = None

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)


@dataclass(frozen=True)
class PairingCandidate:
    track_id: int
    score: float


@dataclass
class SpeakerAttribution:
    """Result of pairing one voice segment against the current tracks."""

    cluster_id: Optional[str]
    segment: VoiceSegment
    candidates: list[PairingCandidate] = field(default_factory=list)
    best_track_id: Optional[int] = None


def soft_iou(series: ScoreSeries, segment: VoiceSegment) -> float:
    """
    Probability-weighted IoU between a track's score series and a voice segment.

    Returns 0.0 when the segment has no confidence or its window does not
    overlap the series.
    """
    count = len(series)
    lo = max(0, series.local_index(segment.start_time))
    hi = min(count, series.local_index(segment.end_time))
    if hi <= lo or segment.confidence <= 0:
        return 0.0

    probabilities = series.probabilities
    sum_overlap = sum(probabilities[lo:hi])
    sum_all = sum(probabilities)

    sum_all_speech = segment.confidence * (hi - lo)
    intersection = sum_overlap * segment.confidence
    union = sum_all + sum_all_speech - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def rank_tracks(
    segment: VoiceSegment,
    series_by_track: Mapping[int, ScoreSeries],
    min_score: float = 0.0,
) -> list[PairingCandidate]:
    """Score a segment against every track, best first (ties: lower track id)."""
    candidates = [
        PairingCandidate(track_id=track_id, score=soft_iou(series, segment))
        for track_id, series in series_by_track.items()
    ]
    candidates = [c for c in candidates if c.score > 0 and c.score >= min_score]
    candidates.sort(key=lambda c: (-c.score, c.track_id))
    return candidates


class SpeakerTrackAssociation:
    """
    Accumulated pairing evidence between speaker clusters and face tracks.

    Owned by the diarization path.
    """

    def __init__(self):
        self._evidence: dict[str, dict[int, float]] = defaultdict(lambda: defaultdict(float))
        self._segments: dict[str, int] = defaultdict(int)

    def record(self, cluster_id: str, candidates: list[PairingCandidate]) -> None:
        self._segments[cluster_id] += 1
        for candidate in candidates:
            self._evidence[cluster_id][candidate.track_id] += candidate.score

    def best_track(self, cluster_id: str) -> Optional[int]:
        evidence = self._evidence.get(cluster_id)
        if not evidence:
            return None
        return min(evidence.items(), key=lambda item: (-item[1], item[0]))[0]

    def evidence(self, cluster_id: str) -> dict[int, float]:
        return dict(self._evidence.get(cluster_id, {}))

    def segment_count(self, cluster_id: str) -> int:
        return self._segments.get(cluster_id, 0)

    def merge_clusters(self, absorbed: Mapping[str, str]) -> None:
        """Fold evidence of consolidated clusters into their survivors."""
        for old_id, new_id in absorbed.items():
            for track_id, score in self._evidence.pop(old_id, {}).items():
                self._evidence[new_id][track_id] += score
            self._segments[new_id] += self._segments.pop(old_id, 0)
            logger.debug(f"Moved pairing evidence of {old_id} to {new_id}")

    def mappings(self) -> dict[str, int]:
        """Best track per speaker cluster, for speakers with any evidence."""
        result = {}
        for cluster_id in self._evidence:
            track_id = self.best_track(cluster_id)
            if track_id is not None:
                result[cluster_id] = track_id
        return result
