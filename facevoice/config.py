"""
Configuration module using Pydantic Settings for environment variable management.

Tunables that operators actually change are exposed as environment variables.
Everything else (filter noise matrices, damping rates, cost weights) is hardcoded
in the frozen per-component config objects below, which are what the services
take in their constructors.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


# ============================================================
# KALMAN FILTER NOISE MODEL
# ============================================================

# Process noise (state: cx, cy, s, r, vx, vy, s')
Q_COV_XX = 0.073745  # coord-coord
Q_COV_AA = 0.001281  # area-area
Q_COV_RR = 0.000651  # ratio-ratio
Q_COV_VV = 0.000467  # velocity-velocity
Q_COV_VAVA = 0.000009  # growth-growth
Q_COV_XV = 0.000134446  # coord-velocity
Q_COV_AVA = 0.000004516  # area-growth

# Measurement noise (measurement: cx, cy, s, r)
R_COV_XX = 0.081101
R_COV_AA = 0.000061
R_COV_RR = 0.000026


def _default_q() -> tuple[tuple[float, ...], ...]:
    return (
        (Q_COV_XX, 0, 0, 0, Q_COV_XV, 0, 0),
        (0, Q_COV_XX, 0, 0, 0, Q_COV_XV, 0),
        (0, 0, Q_COV_AA, 0, 0, 0, Q_COV_AVA),
        (0, 0, 0, Q_COV_RR, 0, 0, 0),
        (Q_COV_XV, 0, 0, 0, Q_COV_VV, 0, 0),
        (0, Q_COV_XV, 0, 0, 0, Q_COV_VV, 0),
        (0, 0, Q_COV_AVA, 0, 0, 0, Q_COV_VAVA),
    )


def _default_r() -> tuple[tuple[float, ...], ...]:
    return (
        (R_COV_XX, 0, 0, 0),
        (0, R_COV_XX, 0, 0),
        (0, 0, R_COV_AA, 0),
        (0, 0, 0, R_COV_RR),
    )


def _default_p0() -> tuple[tuple[float, ...], ...]:
    return (
        (0.14, 0, 0, 0, 0.01, 0, 0),
        (0, 0.14, 0, 0, 0, 0.01, 0),
        (0, 0, 130, 0, 0, 0, 42),
        (0, 0, 0, 7e-4, 0, 0, 0),
        (0.01, 0, 0, 0, 7e-3, 0, 0),
        (0, 0.01, 0, 0, 0, 7e-3, 0),
        (0, 0, 42, 0, 0, 0, 49),
    )


@dataclass(frozen=True)
class KalmanConfig:
    """Noise model and validity limits for the bounding-box Kalman filter."""

    process_noise: tuple[tuple[float, ...], ...] = field(default_factory=_default_q)
    measurement_noise: tuple[tuple[float, ...], ...] = field(default_factory=_default_r)
    initial_covariance: tuple[tuple[float, ...], ...] = field(default_factory=_default_p0)
    min_scale: float = 1e-4  # smallest w*h (normalized units) a valid state may have
    frame_margin: float = 0.5  # how far (in box sizes) a center may leave the frame


@dataclass(frozen=True)
class TrackingConfig:
    """Association gates, cost weights and lifecycle thresholds for the face tracker."""

    min_iou: float = 0.2
    max_appearance_cost: float = 1.2
    max_reid_cost: float = 0.4
    appearance_weight: float = 1.0
    velocity_weight: float = 0.2
    confidence_weight: float = 1.0
    miss_threshold: int = 20
    max_inactive_age: int = 300
    velocity_damping: float = 0.5 ** (1 / 30)
    growth_damping: float = 0.7 ** (1 / 30)
    embedding_alpha: float = 1 - 0.333 ** (5 / 30)
    embedding_confidence_threshold: float = 0.5
    appearance_cost_variance: float = 0.006 * (5 / 30)
    appearance_cost_measurement_variance: float = 0.006
    score_buffer_capacity: int = 75


@dataclass(frozen=True)
class ScoringConfig:
    """Slot pool sizing and scheduling cadence for speaking detection."""

    frames_per_update: int = 8
    warm_slots: int = 2
    max_slots: int = 8
    slot_lifespan_seconds: float = 5.0


@dataclass(frozen=True)
class ClusteringConfig:
    """Online speaker clustering thresholds."""

    threshold: float = 0.45
    consolidation_threshold: float = 0.3
    metric: Literal["cosine", "normalized_l2", "l2"] = "cosine"
    id_prefix: str = "speaker"


@dataclass(frozen=True)
class PairingConfig:
    """Audio-visual pairing parameters."""

    frame_rate: float = 25.0
    min_score: float = 0.1


class Settings(BaseSettings):
    """
    Application settings.

    Only the operational knobs are loaded from environment variables.
    The noise model and cost weights are hardcoded for consistency.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES
    # ============================================================

    # Application
    app_name: str = "facevoice"
    debug: bool = False
    log_level: str = "INFO"

    # Video
    frame_rate: float = 25.0

    # Tracking
    min_iou: float = 0.2
    miss_threshold: int = 20
    max_inactive_age: int = 300
    score_buffer_capacity: int = 75

    # Speaking detection scheduling
    frames_per_update: int = 8
    warm_slots: int = 2
    max_slots: int = 8
    slot_lifespan_seconds: float = 5.0

    # Speaker clustering / pairing
    cluster_threshold: float = 0.45
    pairing_min_score: float = 0.1

    # Diarization channel
    segment_queue_size: int = 256

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def get_kalman_config(self) -> KalmanConfig:
        """Build KalmanConfig (not env-configurable)."""
        return KalmanConfig()

    def get_tracking_config(self) -> TrackingConfig:
        """Build TrackingConfig from settings."""
        return TrackingConfig(
            min_iou=self.min_iou,
            miss_threshold=self.miss_threshold,
            max_inactive_age=self.max_inactive_age,
            score_buffer_capacity=self.score_buffer_capacity,
        )

    def get_scoring_config(self) -> ScoringConfig:
        """Build ScoringConfig from settings."""
        return ScoringConfig(
            frames_per_update=self.frames_per_update,
            warm_slots=self.warm_slots,
            max_slots=self.max_slots,
            slot_lifespan_seconds=self.slot_lifespan_seconds,
        )

    def get_clustering_config(self) -> ClusteringConfig:
        """Build ClusteringConfig from settings."""
        return ClusteringConfig(threshold=self.cluster_threshold)

    def get_pairing_config(self) -> PairingConfig:
        """Build PairingConfig from settings."""
        return PairingConfig(
            frame_rate=self.frame_rate,
            min_score=self.pairing_min_score,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
