"""
Scoring Slot Pool - a small set of speaking-detection model instances shared
by all tracked faces.

Slots are kept in a list ordered by creation. The first `warm_slots` slots
are warm: they never expire and are never pruned, so there is always some
capacity ready without paying model construction cost. Every other slot has
an expiration deadline that is refreshed whenever it is handed out.

Ordering invariant: refreshes always cover a prefix of the list (the first n
slots, or all slots on growth), so non-warm deadlines never increase from
head to tail and expired slots are always contiguous at the tail.
release_unused() checks this explicitly before pruning.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import numpy as np

from facevoice.config import ScoringConfig
from facevoice.services.errors import PoolInvariantError
from facevoice.services.kalman_filter import Box

logger = logging.getLogger(__name__)


class SpeakingScorer(Protocol):
    """External speaking-detection model."""

    def score(self, region: Box, image: np.ndarray) -> float:
        """Probability in [0, 1] that the face in `region` is speaking."""
        ...


@dataclass
class ScoringSlot:
    """Reusable handle bound to one scorer instance."""

    slot_id: int
    scorer: Any
    warm: bool = False
    expires_at: Optional[float] = None
    track_id: Optional[int] = None

    def is_expired(self, now: float) -> bool:
        if self.warm or self.expires_at is None:
            return False
        return self.expires_at <= now


class ScoringSlotPool:
    """
    Pool of scoring slots with a warm floor, expirations and a size cap.

    All pool mutation happens under one lock; the scorers themselves are
    called outside it.
    """

    def __init__(
        self,
        scorer_factory: Callable[[], Any],
        config: Optional[ScoringConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ScoringConfig()
        if self.config.warm_slots < 0:
            raise ValueError(f"warm_slots must be >= 0, got {self.config.warm_slots}")
        if self.config.max_slots < max(self.config.warm_slots, 1):
            raise ValueError(
                f"max_slots ({self.config.max_slots}) must be at least warm_slots ({self.config.warm_slots}) and 1"
            )

        self._scorer_factory = scorer_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._slots: list[ScoringSlot] = []
        self._next_slot_id = 0

        for _ in range(self.config.warm_slots):
            self._slots.append(self._create_slot(warm=True))
        logger.info(f"Scoring pool ready with {self.config.warm_slots} warm slots (cap {self.config.max_slots})")

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def warm_count(self) -> int:
        return sum(1 for slot in self._slots if slot.warm)

    @property
    def slots(self) -> tuple[ScoringSlot, ...]:
        return tuple(self._slots)

    def acquire(self, n: int) -> list[ScoringSlot]:
        """
        Hand out the first n slots, growing the pool if needed.

        Growing refreshes every non-warm slot, since all of them are about
        to be dispatched. Otherwise only the first n are refreshed. Requests
        beyond max_slots are clamped.
        """
        if n < 0:
            raise ValueError(f"Cannot acquire a negative number of slots ({n})")

        with self._lock:
            if n > self.config.max_slots:
                logger.warning(f"Requested {n} scoring slots, capped at {self.config.max_slots}")
                n = self.config.max_slots

            # expired slots are never handed out again
            self._prune_expired()

            deadline = self._clock() + self.config.slot_lifespan_seconds
            if n > len(self._slots):
                while len(self._slots) < n:
                    self._slots.append(self._create_slot(warm=False))
                refreshed = self._slots
                logger.debug(f"Scoring pool grew to {len(self._slots)} slots")
            else:
                refreshed = self._slots[:n]

            for slot in refreshed:
                if not slot.warm:
                    slot.expires_at = deadline

            return list(self._slots[:n])

    def release_unused(self) -> int:
        """
        Prune expired slots from the tail.

        Stops at the first warm or unexpired slot. Returns the number of
        slots removed.

        Raises:
            PoolInvariantError: Non-warm deadlines are out of order
        """
        with self._lock:
            self._check_order()
            return self._prune_expired()

    def _prune_expired(self) -> int:
        now = self._clock()
        pruned = 0
        while self._slots and self._slots[-1].is_expired(now):
            slot = self._slots.pop()
            pruned += 1
            logger.debug(f"Released expired scoring slot {slot.slot_id}")
        return pruned

    def _check_order(self) -> None:
        previous: Optional[float] = None
        for slot in self._slots:
            if slot.warm:
                if previous is not None:
                    raise PoolInvariantError(f"Warm slot {slot.slot_id} follows an expiring slot")
                continue
            if slot.expires_at is None:
                raise PoolInvariantError(f"Slot {slot.slot_id} has no expiration")
            if previous is not None and slot.expires_at > previous:
                raise PoolInvariantError(
                    f"Slot {slot.slot_id} expires at {slot.expires_at}, after its predecessor ({previous})"
                )
            previous = slot.expires_at

    def _create_slot(self, warm: bool) -> ScoringSlot:
        slot = ScoringSlot(slot_id=self._next_slot_id, scorer=self._scorer_factory(), warm=warm)
        self._next_slot_id += 1
        return slot
