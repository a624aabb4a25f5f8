"""
Face Tracker Service - Frame-by-frame face tracking with persistent identities.

This service maintains the set of face tracks for a live video stream:
1. Predicts every active track forward with its bounding-box Kalman filter
2. Associates detections to active tracks with a sequential greedy scan
   (highest-confidence detection first) over a combined cost:
   overlap, appearance (embedding cosine distance), direction of motion
   and confidence consistency
3. Re-identifies inactive tracks from appearance alone when a face comes back
4. Spawns new tracks for detections nothing claimed
5. Moves tracks that keep missing detections to inactive, and purges
   inactive tracks after a deletion age

Track state is owned here and mutated only from the frame path.
"""

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from facevoice.config import KalmanConfig, TrackingConfig
from facevoice.services.kalman_filter import Box, BoxKalmanFilter, UnivariateKF
from facevoice.services.score_buffer import ScoreBuffer

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION CONSTANTS
# ============================================================================

# Cosine distance reported when one side has no usable embedding
MAX_COSINE_DISTANCE = 2.0


class TrackStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class Detection:
    """One face observation from the external detector."""

    bbox: Box  # normalized (x, y, w, h)
    confidence: float
    embedding: Optional[np.ndarray] = None
    landmarks: Optional[np.ndarray] = None  # (5, 2) pixel coordinates


@dataclass
class AssociationCosts:
    """Cost terms for pairing one detection with one track."""

    iou: float = 0.0
    appearance: Optional[float] = None
    velocity: float = 0.0
    confidence: float = 0.0

    def total(self, config: TrackingConfig) -> float:
        cost = -self.iou
        cost += config.velocity_weight * self.velocity
        cost += config.confidence_weight * self.confidence
        if self.appearance is not None:
            cost += config.appearance_weight * self.appearance
        return cost


def calculate_iou(box1: Box, box2: Box) -> float:
    """Calculate Intersection over Union between two (x, y, w, h) boxes."""
    x1, y1, w1, h1 = box1
    x2, y2, w2, h2 = box2

    # Calculate intersection
    xi1 = max(x1, x2)
    yi1 = max(y1, y2)
    xi2 = min(x1 + w1, x2 + w2)
    yi2 = min(y1 + h1, y2 + h2)

    if xi2 <= xi1 or yi2 <= yi1:
        return 0.0

    intersection = (xi2 - xi1) * (yi2 - yi1)

    # Calculate union
    union = w1 * h1 + w2 * h2 - intersection
    if union <= 0:
        return 0.0

    return intersection / union


def _unit(vector: np.ndarray) -> Optional[np.ndarray]:
    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vector))
    if norm == 0 or not math.isfinite(norm):
        return None
    return vector / np.float32(norm)


class Track:
    """
    One tracked face.

    Holds the Kalman estimate, lifecycle counters, the rolling speaking
    score buffer and a running unit-norm appearance embedding.
    """

    def __init__(
        self,
        track_id: int,
        detection: Detection,
        frame_index: int,
        config: TrackingConfig,
        kalman_config: KalmanConfig,
    ):
        self.track_id = track_id
        self.config = config
        self.kalman = BoxKalmanFilter(detection.bbox, kalman_config)
        self.status = TrackStatus.ACTIVE
        self.scores = ScoreBuffer(config.score_buffer_capacity)

        self.misses = 0
        self.hits = 1
        self.first_frame = frame_index
        self.last_update_frame = frame_index
        self.inactive_since_frame: Optional[int] = None

        self.confidence = detection.confidence
        self.expected_confidence = detection.confidence
        self._previous_confidence: Optional[float] = None
        self.landmarks = detection.landmarks

        self.embedding = _unit(detection.embedding) if detection.embedding is not None else None
        self._appearance_cost = UnivariateKF(
            x=config.max_appearance_cost / 2,
            Q=config.appearance_cost_variance,
            R=config.appearance_cost_measurement_variance,
        )

    def __repr__(self) -> str:
        return f"Track(id={self.track_id}, status={self.status.value}, misses={self.misses})"

    @property
    def bbox(self) -> Box:
        return self.kalman.bbox

    @property
    def is_active(self) -> bool:
        return self.status is TrackStatus.ACTIVE

    @property
    def has_region(self) -> bool:
        """Whether the track has a usable box to crop for scoring."""
        _, _, w, h = self.bbox
        return self.kalman.is_valid and w > 0 and h > 0

    @property
    def average_appearance_cost(self) -> float:
        return self._appearance_cost.x

    # ------------------------------------------------------------------
    # Costs
    # ------------------------------------------------------------------

    def cosine_distance(self, embedding: Optional[np.ndarray]) -> Optional[float]:
        if self.embedding is None or embedding is None:
            return None
        other = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if other.shape != self.embedding.shape:
            return MAX_COSINE_DISTANCE
        denominator = float(np.linalg.norm(other))
        if denominator == 0:
            return MAX_COSINE_DISTANCE
        return 1.0 - float(np.dot(self.embedding, other)) / denominator

    def costs_for(self, detection: Detection) -> AssociationCosts:
        return AssociationCosts(
            iou=calculate_iou(self.bbox, detection.bbox),
            appearance=self.cosine_distance(detection.embedding),
            velocity=self.kalman.velocity_cost(detection.bbox),
            confidence=abs(self.expected_confidence - detection.confidence),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def predict(self) -> None:
        self.kalman.predict()

    def register_hit(self, detection: Detection, costs: AssociationCosts, frame_index: int) -> None:
        """Fold a matched detection into the track."""
        self.misses = 0
        self.hits += 1
        self.last_update_frame = frame_index
        self.landmarks = detection.landmarks

        if self.kalman.is_valid:
            self.kalman.observe(detection.bbox)
        else:
            self.kalman.activate(detection.bbox)

        self._previous_confidence = self.confidence
        self.confidence = detection.confidence
        self.expected_confidence = self.confidence - (self._previous_confidence - self.confidence)

        if costs.appearance is not None:
            self.update_embedding(detection, costs.appearance)
        elif self.embedding is None and detection.embedding is not None:
            self.embedding = _unit(detection.embedding)

    def register_miss(self, frame_index: int) -> None:
        """Count a frame without a matching detection."""
        if not self.is_active:
            return

        self.misses += 1
        if self.misses >= self.config.miss_threshold or not self.kalman.is_valid:
            self.deactivate(frame_index)
        else:
            self.kalman.damp(self.config.velocity_damping, self.config.growth_damping)

    def deactivate(self, frame_index: int) -> None:
        self.status = TrackStatus.INACTIVE
        self.inactive_since_frame = frame_index
        self.kalman.deactivate()
        logger.debug(f"Track {self.track_id} inactive at frame {frame_index} after {self.misses} misses")

    def reactivate(self, detection: Detection, frame_index: int) -> None:
        """Bring an inactive track back at a re-identified detection."""
        self.status = TrackStatus.ACTIVE
        self.inactive_since_frame = None
        self.misses = 0
        self.hits += 1
        self.last_update_frame = frame_index
        self.kalman.activate(detection.bbox)
        self.landmarks = detection.landmarks
        self._previous_confidence = None
        self.confidence = detection.confidence
        self.expected_confidence = detection.confidence
        appearance = self.cosine_distance(detection.embedding)
        if appearance is not None:
            self.update_embedding(detection, appearance)

    def inactive_age(self, frame_index: int) -> int:
        if self.inactive_since_frame is None:
            return 0
        return frame_index - self.inactive_since_frame

    def update_embedding(self, detection: Detection, appearance_cost: float) -> None:
        """
        Exponential moving average of the appearance embedding.

        The step shrinks for low-confidence detections and for matches that
        look worse than this track's running appearance cost.
        """
        min_conf = self.config.embedding_confidence_threshold
        if detection.confidence < min_conf or detection.embedding is None:
            return
        new_embedding = _unit(detection.embedding)
        if new_embedding is None or self.embedding is None:
            return
        if new_embedding.shape != self.embedding.shape:
            return

        alpha = self.config.embedding_alpha
        alpha *= (detection.confidence - min_conf) / (1.0 - min_conf) if min_conf < 1.0 else 1.0
        alpha *= math.exp(-appearance_cost / (self.average_appearance_cost + 1e-10))
        self._appearance_cost.step(appearance_cost)

        blended = self.embedding + np.float32(alpha) * (new_embedding - self.embedding)
        self.embedding = _unit(blended)
        if self.embedding is None:
            self.embedding = new_embedding


@dataclass
class TrackingFrame:
    """Tracking results for a single frame."""

    frame_index: int
    active_tracks: list[Track] = field(default_factory=list)
    inactive_tracks: list[Track] = field(default_factory=list)
    new_track_ids: list[int] = field(default_factory=list)
    reidentified_track_ids: list[int] = field(default_factory=list)
    removed_track_ids: list[int] = field(default_factory=list)
    num_detections: int = 0

    @property
    def num_active_tracks(self) -> int:
        return len(self.active_tracks)


class FaceTracker:
    """
    Track manager.

    Keeps tracks in creation order (track_id -> Track). Association is a
    sequential greedy scan, so ties between equally good tracks go to the
    older track and contested tracks go to the more confident detection.
    """

    def __init__(
        self,
        config: Optional[TrackingConfig] = None,
        kalman_config: Optional[KalmanConfig] = None,
    ):
        self.config = config or TrackingConfig()
        self.kalman_config = kalman_config or KalmanConfig()

        self._tracks: OrderedDict[int, Track] = OrderedDict()
        self._next_track_id = 0

    def reset(self) -> None:
        """Reset tracker state for a new stream."""
        self._tracks.clear()
        self._next_track_id = 0

    @property
    def tracks(self) -> list[Track]:
        return list(self._tracks.values())

    @property
    def active_tracks(self) -> list[Track]:
        return [t for t in self._tracks.values() if t.is_active]

    @property
    def inactive_tracks(self) -> list[Track]:
        return [t for t in self._tracks.values() if not t.is_active]

    def get(self, track_id: int) -> Optional[Track]:
        return self._tracks.get(track_id)

    def update(self, detections: list[Detection], frame_index: int) -> TrackingFrame:
        """
        Process a single frame's detections and update tracks.

        Args:
            detections: Face detections for this frame
            frame_index: Monotonic frame index in the stream

        Returns:
            TrackingFrame describing the track set after this frame
        """
        result = TrackingFrame(frame_index=frame_index, num_detections=len(detections))

        # Step 1: Predict active tracks forward
        for track in self.active_tracks:
            track.predict()

        # Step 2: Greedy association, most confident detection first
        usable = [d for d in detections if d.bbox[2] > 0 and d.bbox[3] > 0]
        if len(usable) < len(detections):
            logger.debug(f"Dropped {len(detections) - len(usable)} empty detections at frame {frame_index}")
        ordered = sorted(usable, key=lambda d: d.confidence, reverse=True)
        matched_track_ids: set[int] = set()
        unmatched: list[Detection] = []

        for detection in ordered:
            best = self._best_active_match(detection, matched_track_ids)
            if best is None:
                unmatched.append(detection)
                continue
            track, costs = best
            track.register_hit(detection, costs, frame_index)
            matched_track_ids.add(track.track_id)

        # Step 3: Re-identify inactive tracks by appearance
        remaining: list[Detection] = []
        for detection in unmatched:
            track = self._best_inactive_match(detection, matched_track_ids)
            if track is None:
                remaining.append(detection)
                continue
            track.reactivate(detection, frame_index)
            matched_track_ids.add(track.track_id)
            result.reidentified_track_ids.append(track.track_id)
            logger.info(f"Re-identified track {track.track_id} at frame {frame_index}")

        # Step 4: Misses for active tracks nothing claimed
        for track in self.active_tracks:
            if track.track_id not in matched_track_ids:
                track.register_miss(frame_index)

        # Step 5: New tracks for leftover detections
        for detection in remaining:
            track = self._create_track(detection, frame_index)
            result.new_track_ids.append(track.track_id)

        # Step 6: Purge inactive tracks past the deletion age
        result.removed_track_ids = self._remove_stale_tracks(frame_index)

        result.active_tracks = self.active_tracks
        result.inactive_tracks = self.inactive_tracks
        return result

    def _best_active_match(
        self,
        detection: Detection,
        matched_track_ids: set[int],
    ) -> Optional[tuple[Track, AssociationCosts]]:
        best: Optional[tuple[Track, AssociationCosts]] = None
        best_cost = math.inf

        for track in self._tracks.values():
            if not track.is_active or track.track_id in matched_track_ids:
                continue
            costs = track.costs_for(detection)
            if costs.iou < self.config.min_iou:
                continue
            if costs.appearance is not None and costs.appearance > self.config.max_appearance_cost:
                continue
            cost = costs.total(self.config)
            if cost < best_cost:
                best_cost = cost
                best = (track, costs)

        return best

    def _best_inactive_match(self, detection: Detection, matched_track_ids: set[int]) -> Optional[Track]:
        if detection.embedding is None:
            return None

        best: Optional[Track] = None
        best_cost = self.config.max_reid_cost
        for track in self._tracks.values():
            if track.is_active or track.track_id in matched_track_ids:
                continue
            distance = track.cosine_distance(detection.embedding)
            if distance is not None and distance <= best_cost:
                best_cost = distance
                best = track
        return best

    def _create_track(self, detection: Detection, frame_index: int) -> Track:
        """Create a new face track from a detection."""
        track = Track(
            track_id=self._next_track_id,
            detection=detection,
            frame_index=frame_index,
            config=self.config,
            kalman_config=self.kalman_config,
        )
        self._tracks[track.track_id] = track
        self._next_track_id += 1
        logger.debug(f"Created track {track.track_id} at frame {frame_index}")
        return track

    def _remove_stale_tracks(self, frame_index: int) -> list[int]:
        """Remove inactive tracks that exceeded the deletion age."""
        stale = [
            track_id
            for track_id, track in self._tracks.items()
            if not track.is_active and track.inactive_age(frame_index) > self.config.max_inactive_age
        ]
        for track_id in stale:
            del self._tracks[track_id]
            logger.debug(f"Removed stale track {track_id}")
        return stale
