"""
Kalman Filter Service - Linear state estimation for face tracks.

Provides:
1. KalmanFilter: generic linear filter (predict / update / step) in float32
2. BoxKalmanFilter: constant-velocity filter over a face bounding box
   - State: (cx, cy, s, r, vx, vy, s') where s = w*h and r = w/h
   - Measurement: (cx, cy, s, r)
   - Replays linearly interpolated measurements across detection gaps
3. UnivariateKF: scalar filter used to follow a track's running appearance cost

Boxes are (x, y, w, h) in normalized frame coordinates (top-left origin).
"""

import logging
import math
from collections import deque
from typing import Optional

import numpy as np

from facevoice.config import KalmanConfig

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION CONSTANTS
# ============================================================================

# Scale applied to Q when no initial covariance is given
INITIAL_UNCERTAINTY = 1000.0

# Number of past box centers used to estimate the direction of motion
MOTION_HISTORY = 3

Box = tuple[float, float, float, float]


class KalmanFilter:
    """
    Linear Kalman filter with fixed transition, control and observation models.

    All matrices are stored as float32 and every operation stays in float32.
    """

    def __init__(
        self,
        x: np.ndarray,
        A: np.ndarray,
        H: np.ndarray,
        Q: np.ndarray,
        R: np.ndarray,
        B: Optional[np.ndarray] = None,
        P0: Optional[np.ndarray] = None,
    ):
        self.x = np.asarray(x, dtype=np.float32).reshape(-1).copy()
        self.A = np.asarray(A, dtype=np.float32)
        self.H = np.asarray(H, dtype=np.float32)
        self.Q = np.asarray(Q, dtype=np.float32)
        self.R = np.asarray(R, dtype=np.float32)
        self.B = None if B is None else np.asarray(B, dtype=np.float32)

        n = self.x.shape[0]
        if self.A.shape != (n, n) or self.Q.shape != (n, n):
            raise ValueError(f"A and Q must be {n}x{n}, got {self.A.shape} and {self.Q.shape}")
        if self.H.shape[1] != n or self.R.shape != (self.H.shape[0], self.H.shape[0]):
            raise ValueError(f"H {self.H.shape} and R {self.R.shape} do not fit a state of size {n}")

        if P0 is None:
            P0 = np.float32(INITIAL_UNCERTAINTY) * self.Q + self.H.T @ self.R @ self.H
        self.P = np.asarray(P0, dtype=np.float32).copy()
        self._identity = np.eye(n, dtype=np.float32)

    @property
    def dim_x(self) -> int:
        return self.x.shape[0]

    @property
    def dim_z(self) -> int:
        return self.H.shape[0]

    def predict(self, u: Optional[np.ndarray] = None) -> None:
        """Advance the state one step: x = A·x (+ B·u), P = A·P·Aᵗ + Q."""
        if u is not None and self.B is not None:
            self.x = self.A @ self.x + self.B @ np.asarray(u, dtype=np.float32)
        else:
            self.x = self.A @ self.x
        self.P = self.A @ self.P @ self.A.T + self.Q

    def update(self, z: np.ndarray) -> bool:
        """
        Fold one measurement into the state.

        Returns False, leaving the state untouched, when the innovation
        covariance cannot be inverted.
        """
        z = np.asarray(z, dtype=np.float32).reshape(-1)
        y = z - self.H @ self.x
        S = self.H @ self.P @ self.H.T + self.R

        S_inv = self._invert(S)
        if S_inv is None:
            logger.debug("Singular innovation covariance, skipping update")
            return False

        K = self.P @ self.H.T @ S_inv
        self.x = self.x + K @ y
        P = (self._identity - K @ self.H) @ self.P
        self.P = (np.float32(0.5) * (P + P.T)).astype(np.float32)
        return True

    def step(self, z: np.ndarray, u: Optional[np.ndarray] = None) -> bool:
        """Predict then update."""
        self.predict(u)
        return self.update(z)

    def mahalanobis_distance(self, z: np.ndarray) -> float:
        """Squared Mahalanobis distance of a measurement from the predicted one."""
        z = np.asarray(z, dtype=np.float32).reshape(-1)
        y = z - self.H @ self.x
        S_inv = self._invert(self.H @ self.P @ self.H.T + self.R)
        if S_inv is None:
            return math.inf
        return float(y @ S_inv @ y)

    @staticmethod
    def _invert(S: np.ndarray) -> Optional[np.ndarray]:
        try:
            S_inv = np.linalg.inv(S)
        except np.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(S_inv)):
            return None
        return S_inv.astype(np.float32)


class BoxKalmanFilter(KalmanFilter):
    """
    Constant-velocity Kalman filter over a face bounding box.

    The filter keeps its own frame clock: predict() advances it, observe()
    consumes a detection. When detections were missed for several frames,
    observe() rewinds to the last observed state and replays linearly
    interpolated measurements so the velocity estimate is not polluted by
    the free-running predictions.
    """

    def __init__(self, bbox: Box, config: Optional[KalmanConfig] = None):
        self.config = config or KalmanConfig()

        A = np.eye(7, dtype=np.float32)
        A[0, 4] = A[1, 5] = A[2, 6] = 1.0
        H = np.eye(4, 7, dtype=np.float32)
        z = self.bbox_to_measurement(bbox)

        super().__init__(
            x=np.concatenate([z, np.zeros(3, dtype=np.float32)]),
            A=A,
            H=H,
            Q=np.array(self.config.process_noise, dtype=np.float32),
            R=np.array(self.config.measurement_noise, dtype=np.float32),
            P0=np.array(self.config.initial_covariance, dtype=np.float32),
        )

        self._current_time = 0
        self._last_measurement_time = 0
        self._last_measurement = z
        self._last_observed_state = self.x.copy()
        self._last_observed_covariance = self.P.copy()
        self._centers: deque[np.ndarray] = deque([z[:2].copy()], maxlen=MOTION_HISTORY)
        self._velocity_direction = math.nan

    # ------------------------------------------------------------------
    # Box <-> state conversion
    # ------------------------------------------------------------------

    @staticmethod
    def bbox_to_measurement(bbox: Box) -> np.ndarray:
        x, y, w, h = bbox
        if w <= 0 or h <= 0:
            raise ValueError(f"Bounding box must have positive size, got {bbox}")
        return np.array([x + w / 2, y + h / 2, w * h, w / h], dtype=np.float32)

    @property
    def bbox(self) -> Box:
        """Current estimate as (x, y, w, h)."""
        cx, cy, s, r = (float(v) for v in self.x[:4])
        if s <= 0 or r <= 0:
            return (cx, cy, 0.0, 0.0)
        w = math.sqrt(s * r)
        h = w / r
        return (cx - w / 2, cy - h / 2, w, h)

    @property
    def center(self) -> tuple[float, float]:
        return float(self.x[0]), float(self.x[1])

    @property
    def scale(self) -> float:
        return float(self.x[2])

    @property
    def aspect_ratio(self) -> float:
        return float(self.x[3])

    @property
    def velocity(self) -> tuple[float, float]:
        return float(self.x[4]), float(self.x[5])

    @property
    def growth_rate(self) -> float:
        return float(self.x[6])

    @property
    def is_valid(self) -> bool:
        if not np.all(np.isfinite(self.x)):
            return False
        return self.scale >= self.config.min_scale and self.aspect_ratio >= 0

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def predict(self, u: Optional[np.ndarray] = None) -> None:
        self._current_time += 1
        self._advance(u)

    def observe(self, bbox: Box) -> bool:
        """Update the filter with a detected box. Returns False if the update was skipped."""
        z = self.bbox_to_measurement(bbox)
        dt = self._current_time - self._last_measurement_time

        if dt > 1:
            self.x = self._last_observed_state.copy()
            self.P = self._last_observed_covariance.copy()
            step = (z - self._last_measurement) / np.float32(dt)
            measurement = self._last_measurement.copy()
            for _ in range(dt - 1):
                measurement = measurement + step
                self._advance()
                super().update(measurement)
                self._centers.append(measurement[:2].copy())
            self._advance()

        reference = self._centers[0]
        self._velocity_direction = math.atan2(float(z[1] - reference[1]), float(z[0] - reference[0]))
        self._centers.append(z[:2].copy())

        self._last_measurement = z
        self._last_measurement_time = self._current_time
        updated = super().update(z)

        self._last_observed_state = self.x.copy()
        self._last_observed_covariance = self.P.copy()
        return updated

    def activate(self, bbox: Box) -> None:
        """Restart the filter at a box with zero motion and initial covariance."""
        z = self.bbox_to_measurement(bbox)
        self.x = np.concatenate([z, np.zeros(3, dtype=np.float32)])
        self.P = np.array(self.config.initial_covariance, dtype=np.float32)
        self._current_time = 0
        self._last_measurement_time = 0
        self._last_measurement = z
        self._last_observed_state = self.x.copy()
        self._last_observed_covariance = self.P.copy()
        self._centers = deque([z[:2].copy()], maxlen=MOTION_HISTORY)
        self._velocity_direction = math.nan

    def deactivate(self) -> None:
        """Freeze the estimate in place: zero motion, forget measurement history."""
        self.x[4:] = 0.0
        self._current_time = 0
        self._last_measurement_time = 0
        self._last_measurement = self.x[:4].copy()
        self._last_observed_state = self.x.copy()
        self._last_observed_covariance = self.P.copy()
        self._centers = deque([self.x[:2].copy()], maxlen=MOTION_HISTORY)
        self._velocity_direction = math.nan

    def damp(self, velocity_factor: float, growth_factor: float) -> None:
        """Scale down motion, used while a track goes undetected."""
        self.x[4] *= np.float32(velocity_factor)
        self.x[5] *= np.float32(velocity_factor)
        self.x[6] *= np.float32(growth_factor)

    def velocity_cost(self, bbox: Box) -> float:
        """
        Angle between the track's direction of motion and the direction
        towards a candidate box, wrapped to [0, pi]. Zero when no motion
        has been observed yet.
        """
        if math.isnan(self._velocity_direction):
            return 0.0
        x, y, w, h = bbox
        reference = self._centers[0]
        intention = math.atan2(y + h / 2 - float(reference[1]), x + w / 2 - float(reference[0]))
        return abs(_wrap_angle(self._velocity_direction - intention))

    def _advance(self, u: Optional[np.ndarray] = None) -> None:
        super().predict(u)

        _, _, w, h = self.bbox
        margin = self.config.frame_margin
        x_low, x_high = -margin * w, 1.0 + margin * w
        y_low, y_high = -margin * h, 1.0 + margin * h

        if self.x[0] < x_low or self.x[0] > x_high:
            self.x[0] = np.clip(self.x[0], x_low, x_high)
            self.x[4] = 0.0
        if self.x[1] < y_low or self.x[1] > y_high:
            self.x[1] = np.clip(self.x[1], y_low, y_high)
            self.x[5] = 0.0


class UnivariateKF:
    """Scalar random-walk Kalman filter."""

    def __init__(self, x: float, Q: float, R: float, P: float = 1.0):
        self.x = x
        self.P = P
        self.Q = Q
        self.R = R

    def predict(self, u: float = 0.0) -> None:
        self.x += u
        self.P += self.Q

    def update(self, z: float) -> None:
        K = self.P / (self.P + self.R)
        self.x += K * (z - self.x)
        self.P -= K * self.P

    def step(self, z: float, u: float = 0.0) -> None:
        self.predict(u)
        self.update(z)


def _wrap_angle(angle: float) -> float:
    """Wrap an angle into [-pi, pi)."""
    return (angle + math.pi) % (2 * math.pi) - math.pi
