"""
Unit tests for the Kalman filter services.
"""

import math

import numpy as np
import pytest

from facevoice.config import KalmanConfig
from facevoice.services.kalman_filter import BoxKalmanFilter, KalmanFilter, UnivariateKF


def _constant_velocity_filter(**kwargs) -> KalmanFilter:
    A = np.array([[1, 0, 1, 0], [0, 1, 0, 1], [0, 0, 1, 0], [0, 0, 0, 1]])
    H = np.array([[1, 0, 0, 0], [0, 1, 0, 0]])
    Q = np.diag([0.01, 0.01, 0.001, 0.001])
    R = np.diag([0.1, 0.1])
    return KalmanFilter(x=[1.0, 2.0, 0.5, -0.25], A=A, H=H, Q=Q, R=R, **kwargs)


class TestKalmanFilter:
    """Tests for the generic linear filter."""

    def test_zero_innovation_leaves_state_unchanged(self):
        """Test that updating with the predicted measurement keeps x."""
        kf = _constant_velocity_filter()
        kf.predict()
        predicted = kf.x.copy()

        assert kf.update(kf.H @ kf.x)
        np.testing.assert_allclose(kf.x, predicted, rtol=0, atol=1e-7)

    def test_zero_innovation_after_several_steps(self):
        """Test zero innovation property on a filter with history."""
        kf = _constant_velocity_filter()
        for z in ([1.5, 1.8], [2.1, 1.5], [2.4, 1.3]):
            kf.step(np.array(z))
        kf.predict()
        predicted = kf.x.copy()
        kf.update(kf.H @ kf.x)
        np.testing.assert_allclose(kf.x, predicted, rtol=0, atol=1e-6)

    def test_predict_propagates_state_and_covariance(self):
        """Test x = A x and P = A P A' + Q."""
        kf = _constant_velocity_filter()
        P_before = kf.P.copy()
        kf.predict()
        np.testing.assert_allclose(kf.x, [1.5, 1.75, 0.5, -0.25], atol=1e-6)
        np.testing.assert_allclose(kf.P, kf.A @ P_before @ kf.A.T + kf.Q, rtol=1e-5)

    def test_control_input(self):
        """Test predict with a control input."""
        kf = _constant_velocity_filter(B=np.eye(4))
        kf.predict(u=np.array([1.0, 1.0, 0.0, 0.0]))
        np.testing.assert_allclose(kf.x, [2.5, 2.75, 0.5, -0.25], atol=1e-6)

    def test_default_initial_covariance(self):
        """Test P0 = 1000 Q + H' R H when not given."""
        kf = _constant_velocity_filter()
        expected = 1000 * kf.Q + kf.H.T @ kf.R @ kf.H
        np.testing.assert_allclose(kf.P, expected, rtol=1e-6)

    def test_singular_innovation_skips_update(self):
        """Test that a singular S leaves the state untouched."""
        kf = _constant_velocity_filter(P0=np.zeros((4, 4)))
        kf.R = np.zeros((2, 2), dtype=np.float32)
        x_before = kf.x.copy()

        assert kf.update(np.array([10.0, 10.0])) is False
        np.testing.assert_array_equal(kf.x, x_before)
        np.testing.assert_array_equal(kf.P, np.zeros((4, 4)))

    def test_float32_throughout(self):
        """Test all arithmetic stays in single precision."""
        kf = _constant_velocity_filter()
        kf.step(np.array([1.2, 2.2], dtype=np.float64))
        assert kf.x.dtype == np.float32
        assert kf.P.dtype == np.float32

    def test_covariance_stays_symmetric(self):
        """Test P is symmetric after repeated updates."""
        kf = _constant_velocity_filter()
        rng = np.random.default_rng(7)
        for _ in range(50):
            kf.step(rng.normal(size=2))
        np.testing.assert_allclose(kf.P, kf.P.T, atol=1e-6)
        assert np.all(np.linalg.eigvalsh(kf.P.astype(np.float64)) > -1e-5)

    def test_mahalanobis_zero_at_prediction(self):
        """Test Mahalanobis distance of the predicted measurement."""
        kf = _constant_velocity_filter()
        kf.predict()
        assert kf.mahalanobis_distance(kf.H @ kf.x) == pytest.approx(0.0, abs=1e-9)
        assert kf.mahalanobis_distance(kf.H @ kf.x + 1.0) > 0

    def test_shape_validation(self):
        """Test mismatched matrices are rejected."""
        with pytest.raises(ValueError):
            KalmanFilter(x=[0, 0], A=np.eye(3), H=np.eye(2), Q=np.eye(2), R=np.eye(2))


class TestBoxKalmanFilter:
    """Tests for the bounding-box filter."""

    def test_initial_box_round_trip(self):
        """Test the estimate starts at the initial box."""
        kf = BoxKalmanFilter((0.4, 0.3, 0.2, 0.25))
        x, y, w, h = kf.bbox
        assert x == pytest.approx(0.4, abs=1e-6)
        assert y == pytest.approx(0.3, abs=1e-6)
        assert w == pytest.approx(0.2, abs=1e-6)
        assert h == pytest.approx(0.25, abs=1e-6)
        assert kf.velocity == (0.0, 0.0)

    def test_rejects_empty_box(self):
        """Test a zero-size box cannot seed a filter."""
        with pytest.raises(ValueError):
            BoxKalmanFilter((0.1, 0.1, 0.0, 0.2))

    def test_learns_rightward_motion(self):
        """Test velocity estimate follows a moving face."""
        kf = BoxKalmanFilter((0.2, 0.3, 0.2, 0.2))
        for i in range(1, 20):
            kf.predict()
            kf.observe((0.2 + 0.01 * i, 0.3, 0.2, 0.2))
        vx, _ = kf.velocity
        assert vx > 0

    def test_gap_replays_interpolated_measurements(self):
        """Test a late detection matches observing the interpolated path frame by frame."""
        start = (0.2, 0.3, 0.2, 0.2)
        end = (0.3, 0.35, 0.2, 0.2)
        gap = 5

        stepped = BoxKalmanFilter(start)
        for i in range(1, gap + 1):
            t = i / gap
            stepped.predict()
            stepped.observe(
                (start[0] + t * (end[0] - start[0]), start[1] + t * (end[1] - start[1]), 0.2, 0.2)
            )

        late = BoxKalmanFilter(start)
        for _ in range(gap):
            late.predict()
        late.observe(end)

        np.testing.assert_allclose(late.x, stepped.x, rtol=1e-4, atol=1e-5)
        np.testing.assert_allclose(late.P, stepped.P, rtol=1e-4, atol=1e-5)

    def test_velocity_cost(self):
        """Test motion direction cost towards and away from travel."""
        kf = BoxKalmanFilter((0.2, 0.4, 0.1, 0.1))
        assert kf.velocity_cost((0.8, 0.4, 0.1, 0.1)) == 0.0

        for i in range(1, 4):
            kf.predict()
            kf.observe((0.2 + 0.02 * i, 0.4, 0.1, 0.1))

        ahead = kf.velocity_cost((0.5, 0.4, 0.1, 0.1))
        behind = kf.velocity_cost((0.0, 0.4, 0.1, 0.1))
        assert ahead == pytest.approx(0.0, abs=1e-5)
        assert behind == pytest.approx(math.pi, abs=1e-5)

    def test_deactivate_zeroes_motion(self):
        """Test deactivation freezes the box."""
        kf = BoxKalmanFilter((0.2, 0.3, 0.2, 0.2))
        for i in range(1, 6):
            kf.predict()
            kf.observe((0.2 + 0.02 * i, 0.3, 0.2, 0.2))
        kf.deactivate()
        assert kf.velocity == (0.0, 0.0)
        assert kf.growth_rate == 0.0

    def test_activate_resets_to_box(self):
        """Test activation restarts at a new box with initial covariance."""
        config = KalmanConfig()
        kf = BoxKalmanFilter((0.2, 0.3, 0.2, 0.2), config)
        kf.predict()
        kf.observe((0.25, 0.3, 0.2, 0.2))
        kf.activate((0.6, 0.6, 0.1, 0.1))

        x, y, w, h = kf.bbox
        assert (x, y) == (pytest.approx(0.6, abs=1e-6), pytest.approx(0.6, abs=1e-6))
        assert (w, h) == (pytest.approx(0.1, abs=1e-6), pytest.approx(0.1, abs=1e-6))
        np.testing.assert_allclose(kf.P, np.array(config.initial_covariance, dtype=np.float32))

    def test_validity(self):
        """Test negative scale invalidates the estimate."""
        kf = BoxKalmanFilter((0.2, 0.3, 0.2, 0.2))
        assert kf.is_valid
        kf.x[2] = -0.01
        assert not kf.is_valid

    def test_damp(self):
        """Test motion damping."""
        kf = BoxKalmanFilter((0.2, 0.3, 0.2, 0.2))
        kf.x[4:] = [0.1, -0.2, 0.01]
        kf.damp(0.5, 0.25)
        np.testing.assert_allclose(kf.x[4:], [0.05, -0.1, 0.0025], rtol=1e-6)

    def test_center_clamped_to_frame(self):
        """Test a runaway prediction is clamped near the frame edge."""
        kf = BoxKalmanFilter((0.8, 0.4, 0.1, 0.1))
        kf.x[4] = 0.5
        for _ in range(5):
            kf.predict()
        cx, _ = kf.center
        assert cx <= 1.0 + 0.5 * 0.1 + 1e-6
        assert kf.velocity[0] == 0.0


class TestUnivariateKF:
    """Tests for the scalar filter."""

    def test_converges_to_constant(self):
        kf = UnivariateKF(x=0.0, Q=0.001, R=0.01)
        for _ in range(200):
            kf.step(0.6)
        assert kf.x == pytest.approx(0.6, abs=1e-3)
