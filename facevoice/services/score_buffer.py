"""
Rolling per-track history of speaking probabilities.

The buffer is written only from the frame path. Readers on other threads
get an immutable ScoreSeries snapshot instead of the live buffer.
"""

import bisect
from collections import deque
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class ScoreSample:
    """One speaking probability for one track at one video frame."""

    frame_index: int
    probability: float


@dataclass(frozen=True)
class ScoreSeries:
    """Immutable snapshot of a track's score buffer."""

    track_id: int
    frame_indices: tuple[int, ...]
    probabilities: tuple[float, ...]
    frame_rate: float

    def __len__(self) -> int:
        return len(self.probabilities)

    @property
    def start_time(self) -> float:
        if not self.frame_indices:
            return 0.0
        return self.frame_indices[0] / self.frame_rate

    @property
    def end_time(self) -> float:
        if not self.frame_indices:
            return 0.0
        return (self.frame_indices[-1] + 1) / self.frame_rate

    def local_index(self, time: float) -> int:
        """
        Position in the series of the first sample at or after a stream time.

        With one sample per frame this is round(time * frame_rate) minus the
        first frame index; gaps left by failed scoring calls are skipped.
        """
        frame = round(time * self.frame_rate)
        return bisect.bisect_left(self.frame_indices, frame)


class ScoreBuffer:
    """Fixed-capacity FIFO of ScoreSamples; the oldest sample is evicted first."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"Score buffer capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._samples: deque[ScoreSample] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[ScoreSample]:
        return iter(self._samples)

    @property
    def latest(self) -> ScoreSample | None:
        return self._samples[-1] if self._samples else None

    def append(self, frame_index: int, probability: float) -> None:
        if self._samples and frame_index <= self._samples[-1].frame_index:
            raise ValueError(
                f"Score frame index {frame_index} is not after the latest ({self._samples[-1].frame_index})"
            )
        self._samples.append(ScoreSample(frame_index=frame_index, probability=float(probability)))

    def clear(self) -> None:
        self._samples.clear()

    def snapshot(self, track_id: int, frame_rate: float) -> ScoreSeries:
        return ScoreSeries(
            track_id=track_id,
            frame_indices=tuple(s.frame_index for s in self._samples),
            probabilities=tuple(s.probability for s in self._samples),
            frame_rate=frame_rate,
        )
