"""
Unit tests for landmark-based face alignment.
"""

import math

import numpy as np
import pytest

from facevoice.services.alignment import (
    REFERENCE_LANDMARKS_112,
    SimilarityTransform,
    align_face,
    estimate_similarity_transform,
    reference_landmarks,
)
from facevoice.services.errors import InvalidLandmarksError


class TestEstimateSimilarityTransform:
    """Tests for the closed-form similarity solver."""

    def test_identity(self):
        transform = estimate_similarity_transform(REFERENCE_LANDMARKS_112, REFERENCE_LANDMARKS_112)
        np.testing.assert_allclose(transform.matrix, [[1, 0, 0], [0, 1, 0]], atol=1e-9)

    def test_recovers_known_transform(self):
        """Test s=2, 30 degrees, t=(5, -3) is recovered exactly."""
        theta = math.radians(30)
        known = SimilarityTransform(a=2 * math.cos(theta), b=2 * math.sin(theta), tx=5.0, ty=-3.0)
        src = REFERENCE_LANDMARKS_112
        dst = known.apply(src)

        transform = estimate_similarity_transform(src, dst)

        assert transform.scale == pytest.approx(2.0, abs=1e-9)
        assert transform.rotation == pytest.approx(theta, abs=1e-9)
        assert transform.tx == pytest.approx(5.0, abs=1e-7)
        assert transform.ty == pytest.approx(-3.0, abs=1e-7)
        np.testing.assert_allclose(transform.apply(src), dst, atol=1e-7)

    def test_accepts_flat_coordinates(self):
        src = [0.0, 0.0, 1.0, 0.0, 0.0, 1.0]
        dst = [10.0, 10.0, 12.0, 10.0, 10.0, 12.0]
        transform = estimate_similarity_transform(src, dst)
        assert transform.scale == pytest.approx(2.0)
        assert transform.rotation == pytest.approx(0.0, abs=1e-12)
        assert (transform.tx, transform.ty) == (pytest.approx(10.0), pytest.approx(10.0))

    def test_two_points_are_enough(self):
        transform = estimate_similarity_transform([[0, 0], [1, 0]], [[0, 0], [0, 1]])
        assert transform.rotation == pytest.approx(math.pi / 2)

    def test_least_squares_with_noise(self):
        """Test noisy landmarks still give a close fit."""
        rng = np.random.default_rng(5)
        known = SimilarityTransform(a=1.5, b=0.2, tx=3.0, ty=4.0)
        dst = known.apply(REFERENCE_LANDMARKS_112) + rng.normal(scale=0.01, size=(5, 2))

        transform = estimate_similarity_transform(REFERENCE_LANDMARKS_112, dst)
        assert transform.a == pytest.approx(1.5, abs=1e-3)
        assert transform.b == pytest.approx(0.2, abs=1e-3)

    @pytest.mark.parametrize(
        "src,dst",
        [
            ([0.0, 0.0, 1.0], [0.0, 0.0, 1.0]),  # odd flat length
            ([[0, 0], [1, 1], [2, 0]], [[0, 0], [1, 1]]),  # count mismatch
            ([[0, 0]], [[1, 1]]),  # single pair
            ([[2, 2], [2, 2], [2, 2]], [[0, 0], [1, 1], [2, 0]]),  # coincident source points
        ],
    )
    def test_invalid_landmarks(self, src, dst):
        with pytest.raises(InvalidLandmarksError):
            estimate_similarity_transform(src, dst)

    def test_invalid_landmarks_is_value_error(self):
        with pytest.raises(ValueError):
            estimate_similarity_transform([[0, 0]], [[0, 0]])


class TestAlignFace:
    """Tests for the affine warp onto the template."""

    def test_reference_landmarks_scale(self):
        np.testing.assert_allclose(reference_landmarks(224), REFERENCE_LANDMARKS_112 * 2)

    def test_identity_alignment_preserves_image(self):
        """Test a face already on the template comes back unchanged."""
        rng = np.random.default_rng(0)
        image = rng.integers(0, 256, size=(112, 112, 3), dtype=np.uint8)

        aligned = align_face(image, REFERENCE_LANDMARKS_112)

        assert aligned.shape == (112, 112, 3)
        assert np.abs(aligned.astype(int) - image.astype(int)).max() <= 1

    def test_output_size(self, sample_image):
        landmarks = REFERENCE_LANDMARKS_112 * 2 + np.array([200.0, 120.0])
        aligned = align_face(sample_image, landmarks, size=64)
        assert aligned.shape == (64, 64, 3)
