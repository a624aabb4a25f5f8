"""
Speaking Scheduler - dispatches tracked faces to scoring slots.

Every `frames_per_update` frames the scheduler picks the eligible tracks
(active, with a usable box), binds each to one slot, runs the scorer for all
of them concurrently on worker threads, and appends each probability to the
track's score buffer. A failed call only costs that track its sample for
this cycle.

When there are more eligible tracks than the pool cap, the tracks that were
scored least recently go first, so every track is eventually scored.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from facevoice.config import ScoringConfig
from facevoice.services.errors import ScoringError
from facevoice.services.face_tracker import Track
from facevoice.services.scoring_pool import ScoringSlot, ScoringSlotPool

logger = logging.getLogger(__name__)


@dataclass
class ScoringCycle:
    """Outcome of one scheduling cycle."""

    frame_index: int
    scored: dict[int, float] = field(default_factory=dict)
    failed_track_ids: list[int] = field(default_factory=list)
    deferred_track_ids: list[int] = field(default_factory=list)
    pruned_slots: int = 0

    @property
    def scheduled_track_ids(self) -> list[int]:
        return sorted(list(self.scored) + self.failed_track_ids)


class SpeakingScheduler:
    """Round of speaking detection every N frames over a shared slot pool."""

    def __init__(self, pool: ScoringSlotPool, config: Optional[ScoringConfig] = None):
        self.pool = pool
        self.config = config or pool.config
        if self.config.frames_per_update <= 0:
            raise ValueError(f"frames_per_update must be positive, got {self.config.frames_per_update}")
        # track_id -> frame index of the last cycle that dispatched it
        self._last_scheduled: dict[int, int] = {}
        self._last_cycle_frame: Optional[int] = None

    def is_due(self, frame_index: int) -> bool:
        return frame_index % self.config.frames_per_update == 0

    def select_tracks(self, tracks: list[Track]) -> tuple[list[Track], list[Track]]:
        """
        Split eligible tracks into those dispatched this cycle and those deferred.

        Least recently scheduled first; ties go to the more confident track.
        """
        eligible = [t for t in tracks if t.is_active and t.has_region]
        eligible.sort(key=lambda t: (self._last_scheduled.get(t.track_id, -1), -t.confidence, t.track_id))

        limit = self.config.max_slots
        selected, deferred = eligible[:limit], eligible[limit:]
        if deferred:
            logger.info(
                f"{len(eligible)} tracks eligible for scoring, {len(deferred)} deferred to a later cycle"
            )
        return selected, deferred

    async def run_cycle(
        self,
        frame_index: int,
        image: np.ndarray,
        tracks: list[Track],
    ) -> Optional[ScoringCycle]:
        """
        Score tracks for this frame if a cycle is due.

        Returns None when no cycle is due.

        Raises:
            ValueError: frame_index is not after the previous cycle
        """
        if not self.is_due(frame_index):
            return None
        if self._last_cycle_frame is not None and frame_index <= self._last_cycle_frame:
            raise ValueError(
                f"Scoring cycle frame {frame_index} is not after the previous cycle ({self._last_cycle_frame})"
            )
        self._last_cycle_frame = frame_index

        known_ids = {t.track_id for t in tracks}
        self._last_scheduled = {tid: f for tid, f in self._last_scheduled.items() if tid in known_ids}

        selected, deferred = self.select_tracks(tracks)
        cycle = ScoringCycle(
            frame_index=frame_index,
            deferred_track_ids=[t.track_id for t in deferred],
        )
        if not selected:
            cycle.pruned_slots = self.pool.release_unused()
            return cycle

        slots = self.pool.acquire(len(selected))
        assignments = list(zip(slots, selected))
        for slot, track in assignments:
            slot.track_id = track.track_id
            self._last_scheduled[track.track_id] = frame_index
        # tracks the clamped pool could not cover wait for the next cycle
        for track in selected[len(slots):]:
            cycle.deferred_track_ids.append(track.track_id)

        try:
            results = await asyncio.gather(
                *(self._score(slot, track, image) for slot, track in assignments),
                return_exceptions=True,
            )
        except asyncio.CancelledError:
            # abandoned slots keep their deadline and expire on their own
            logger.info(f"Scoring cycle at frame {frame_index} cancelled")
            raise
        finally:
            for slot, _ in assignments:
                slot.track_id = None

        try:
            for (slot, track), result in zip(assignments, results):
                if isinstance(result, BaseException):
                    logger.warning(f"{result} (slot {slot.slot_id}, frame {frame_index})")
                    cycle.failed_track_ids.append(track.track_id)
                    continue
                track.scores.append(frame_index, result)
                cycle.scored[track.track_id] = result
        finally:
            cycle.pruned_slots = self.pool.release_unused()
        return cycle

    async def _score(self, slot: ScoringSlot, track: Track, image: np.ndarray) -> float:
        try:
            probability = await asyncio.to_thread(slot.scorer.score, track.bbox, image)
        except Exception as e:
            raise ScoringError(track.track_id, str(e)) from e

        try:
            probability = float(probability)
        except (TypeError, ValueError) as e:
            raise ScoringError(track.track_id, f"non-numeric score {probability!r}") from e
        if not math.isfinite(probability) or not 0.0 <= probability <= 1.0:
            raise ScoringError(track.track_id, f"score {probability} outside [0, 1]")
        return probability
