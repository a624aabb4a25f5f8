"""
Face Pipeline - the per-frame path.

For every decoded frame:
1. Optionally embed detections that carry landmarks (align + external embedder)
2. Associate detections with tracks (FaceTracker)
3. Every N frames, run a speaking-score cycle (SpeakingScheduler)
4. Publish immutable score snapshots for the diarization path

The frame path is the only writer of tracks and score buffers. The
diarization path only ever sees what is published on the SnapshotChannel.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from facevoice.config import PairingConfig
from facevoice.services.alignment import align_face
from facevoice.services.errors import InvalidLandmarksError
from facevoice.services.face_tracker import Detection, FaceTracker, TrackingFrame
from facevoice.services.score_buffer import ScoreSeries
from facevoice.services.speaking_scheduler import ScoringCycle, SpeakingScheduler

logger = logging.getLogger(__name__)

Embedder = Callable[[np.ndarray], np.ndarray]


class SnapshotChannel:
    """
    Latest-value channel of per-track score series.

    Each publish replaces the whole mapping; readers get the mapping that
    was current when they asked. Values are immutable ScoreSeries.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._series: dict[int, ScoreSeries] = {}
        self._frame_index: Optional[int] = None

    def publish(self, frame_index: int, series: dict[int, ScoreSeries]) -> None:
        with self._lock:
            self._series = dict(series)
            self._frame_index = frame_index

    def latest(self) -> dict[int, ScoreSeries]:
        with self._lock:
            return dict(self._series)

    @property
    def frame_index(self) -> Optional[int]:
        with self._lock:
            return self._frame_index


@dataclass
class FrameResult:
    tracking: TrackingFrame
    scoring: Optional[ScoringCycle] = None
    timestamp: Optional[float] = None


class FacePipeline:
    """Frame-path orchestrator."""

    def __init__(
        self,
        tracker: FaceTracker,
        scheduler: Optional[SpeakingScheduler] = None,
        snapshots: Optional[SnapshotChannel] = None,
        pairing_config: Optional[PairingConfig] = None,
        embedder: Optional[Embedder] = None,
    ):
        self.tracker = tracker
        self.scheduler = scheduler
        self.snapshots = snapshots or SnapshotChannel()
        self.pairing_config = pairing_config or PairingConfig()
        self.embedder = embedder
        self._closed = False
        self._frames_processed = 0
        self._last_frame_index: Optional[int] = None
        # one frame at a time: tracks, buffers and slots are written only under this lock
        self._frame_lock = asyncio.Lock()

    @property
    def frames_processed(self) -> int:
        return self._frames_processed

    @property
    def last_frame_index(self) -> Optional[int]:
        return self._last_frame_index

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def process_frame(
        self,
        frame_index: int,
        image: Optional[np.ndarray],
        detections: list[Detection],
        timestamp: Optional[float] = None,
    ) -> FrameResult:
        """
        Run one frame through tracking and, when due, speaking detection.

        Args:
            frame_index: Monotonic frame index
            image: Decoded frame (HxWxC); without it only tracking runs
            detections: Detector output for this frame
            timestamp: Stream time in seconds, informational

        Returns:
            FrameResult with the tracking state and the scoring cycle if one ran

        Raises:
            RuntimeError: The pipeline is closed
            ValueError: frame_index is not after the last processed frame
        """
        async with self._frame_lock:
            if self._closed:
                raise RuntimeError("Pipeline is closed")
            if self._last_frame_index is not None and frame_index <= self._last_frame_index:
                raise ValueError(
                    f"Frame index {frame_index} is not after the last processed frame ({self._last_frame_index})"
                )

            if self.embedder is not None and image is not None:
                await self._embed_detections(image, detections)

            tracking = self.tracker.update(detections, frame_index)
            self._last_frame_index = frame_index

            scoring = None
            if self.scheduler is not None and image is not None:
                scoring = await self.scheduler.run_cycle(frame_index, image, tracking.active_tracks)

            if scoring is not None or tracking.removed_track_ids:
                self.publish_snapshots(frame_index)

            self._frames_processed += 1
            return FrameResult(tracking=tracking, scoring=scoring, timestamp=timestamp)

    def publish_snapshots(self, frame_index: int) -> None:
        frame_rate = self.pairing_config.frame_rate
        series = {
            track.track_id: track.scores.snapshot(track.track_id, frame_rate)
            for track in self.tracker.tracks
            if len(track.scores) > 0
        }
        self.snapshots.publish(frame_index, series)

    async def _embed_detections(self, image: np.ndarray, detections: list[Detection]) -> None:
        height, width = image.shape[:2]
        for detection in detections:
            if detection.embedding is not None or detection.landmarks is None:
                continue
            try:
                crop = align_face(image, detection.landmarks)
            except InvalidLandmarksError as e:
                logger.warning(f"Skipping embedding for detection at {detection.bbox}: {e}")
                continue
            try:
                embedding = await asyncio.to_thread(self.embedder, crop)
            except Exception as e:
                logger.warning(f"Embedding failed for detection at {detection.bbox} ({width}x{height}): {e}")
                continue
            detection.embedding = np.asarray(embedding, dtype=np.float32).reshape(-1)

    def close(self) -> None:
        """Stop accepting frames; in-flight scoring slots are left to expire."""
        self._closed = True
        logger.info(f"Face pipeline closed after {self._frames_processed} frames")
