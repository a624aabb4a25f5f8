"""
Attribution Worker - the diarization path.

Consumes finalized voice segments from a queue, assigns each to a persistent
speaker cluster, pairs it against the latest published score snapshots and
accumulates speaker-to-track evidence. Runs as its own asyncio task and owns
the clustering state; it never touches tracks directly.

Each queued segment carries a future that the worker resolves with its
SpeakerAttribution, or fails with the ValueError that rejected it.
"""

import asyncio
import logging
from collections import deque
from typing import Optional

from facevoice.config import PairingConfig
from facevoice.services.pairing import (
    PairingCandidate,
    SpeakerAttribution,
    SpeakerTrackAssociation,
    VoiceSegment,
    rank_tracks,
)
from facevoice.services.pipeline import SnapshotChannel
from facevoice.services.speaker_clustering import OnlineSpeakerClustering

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION CONSTANTS
# ============================================================================

CONSOLIDATE_EVERY_SEGMENTS = 50  # batch cluster consolidation cadence
HISTORY_SIZE = 200  # recent attributions kept for reporting


class AttributionWorker:
    """Clusters voice segments and pairs them with tracked faces."""

    def __init__(
        self,
        clustering: OnlineSpeakerClustering,
        snapshots: SnapshotChannel,
        pairing_config: Optional[PairingConfig] = None,
        association: Optional[SpeakerTrackAssociation] = None,
        queue_size: int = 256,
        consolidate_every: int = CONSOLIDATE_EVERY_SEGMENTS,
    ):
        self.clustering = clustering
        self.snapshots = snapshots
        self.pairing_config = pairing_config or PairingConfig()
        self.association = association or SpeakerTrackAssociation()
        self.consolidate_every = consolidate_every

        # (segment, future resolved with its attribution)
        self.segments: asyncio.Queue[tuple[VoiceSegment, asyncio.Future]] = asyncio.Queue(maxsize=queue_size)
        self.history: deque[SpeakerAttribution] = deque(maxlen=HISTORY_SIZE)
        self._segments_seen = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def score_segment(self, segment: VoiceSegment) -> list[PairingCandidate]:
        """Rank current tracks for a segment without touching cluster state."""
        return rank_tracks(segment, self.snapshots.latest(), self.pairing_config.min_score)

    def attribute(self, segment: VoiceSegment) -> SpeakerAttribution:
        """Cluster one segment and pair it with the current tracks."""
        assignment = self.clustering.assign(segment.embedding)
        candidates = self.score_segment(segment)
        self.association.record(assignment.cluster_id, candidates)

        attribution = SpeakerAttribution(
            cluster_id=assignment.cluster_id,
            segment=segment,
            candidates=candidates,
            best_track_id=candidates[0].track_id if candidates else None,
        )
        self.history.append(attribution)

        self._segments_seen += 1
        if self.consolidate_every > 0 and self._segments_seen % self.consolidate_every == 0:
            absorbed = self.clustering.consolidate()
            if absorbed:
                self.association.merge_clusters(absorbed)

        logger.debug(
            f"Segment {segment.start_time:.2f}-{segment.end_time:.2f}s -> {assignment.cluster_id}, "
            f"best track {attribution.best_track_id}"
        )
        return attribution

    async def submit(self, segment: VoiceSegment) -> "asyncio.Future[SpeakerAttribution]":
        """Queue a segment, waiting for room. The returned future resolves once it is attributed."""
        future = asyncio.get_running_loop().create_future()
        await self.segments.put((segment, future))
        return future

    def submit_nowait(self, segment: VoiceSegment) -> Optional["asyncio.Future[SpeakerAttribution]"]:
        """Queue a segment without waiting. Returns None if the queue is full."""
        future = asyncio.get_running_loop().create_future()
        try:
            self.segments.put_nowait((segment, future))
        except asyncio.QueueFull:
            logger.warning(f"Voice segment queue full, dropping segment at {segment.start_time:.2f}s")
            return None
        return future

    async def run(self) -> None:
        """Consume segments until cancelled."""
        logger.info("Attribution worker started")
        try:
            while True:
                segment, future = await self.segments.get()
                try:
                    attribution = self.attribute(segment)
                except ValueError as e:
                    logger.error(f"Rejected voice segment at {segment.start_time:.2f}s: {e}")
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(attribution)
                finally:
                    self.segments.task_done()
        finally:
            logger.info(f"Attribution worker stopped after {self._segments_seen} segments")

    def start(self) -> asyncio.Task:
        if not self.is_running:
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        # segments still queued will never be attributed
        while not self.segments.empty():
            _, future = self.segments.get_nowait()
            future.cancel()
            self.segments.task_done()
