"""
Error types raised by the tracking, scoring and pairing services.

Shape and precondition problems are programming errors and fail fast.
External scoring failures are wrapped in ScoringError, logged and skipped
for that cycle; they never propagate out of the scheduler. Numerical
degeneracy in the filters is handled where it occurs.
"""


class FaceVoiceError(Exception):
    """Base class for service errors."""


class DimensionMismatchError(FaceVoiceError, ValueError):
    """Two vectors that must share a dimension do not."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Dimension mismatch: expected {expected}, got {actual}")


class InvalidLandmarksError(FaceVoiceError, ValueError):
    """Landmark sets cannot be aligned (count, parity or degenerate geometry)."""


class PoolInvariantError(FaceVoiceError, RuntimeError):
    """Scoring slot expirations are no longer ordered from head to tail."""


class ScoringError(FaceVoiceError):
    """A speaking-score call failed for one track in one cycle."""

    def __init__(self, track_id: int, message: str):
        self.track_id = track_id
        super().__init__(f"Scoring failed for track {track_id}: {message}")
