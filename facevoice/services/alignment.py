"""
Face alignment: closed-form similarity transform from five facial landmarks
onto a fixed reference template, then an affine warp of the face crop.

The solver accumulates sums, squares and cross-products in a single pass
over the point pairs and solves for scale, rotation and translation
directly (Umeyama), so it is cheap enough to run per detection.
"""

import logging
import math
from dataclasses import dataclass

import cv2
import numpy as np

from facevoice.services.errors import InvalidLandmarksError

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION CONSTANTS
# ============================================================================

# Five-point template for a 112x112 crop (eyes, nose tip, mouth corners)
REFERENCE_SIZE = 112
REFERENCE_LANDMARKS_112 = np.array(
    [
        [38.2946, 51.6963],  # left eye
        [73.5318, 51.5014],  # right eye
        [56.0252, 71.7366],  # nose
        [41.5493, 92.3655],  # left mouth corner
        [70.7299, 92.2041],  # right mouth corner
    ],
    dtype=np.float64,
)


@dataclass(frozen=True)
class SimilarityTransform:
    """
    2D similarity transform: p' = s·R(θ)·p + t.

    Stored in the scaled-rotation form a = s·cosθ, b = s·sinθ.
    """

    a: float
    b: float
    tx: float
    ty: float

    @property
    def scale(self) -> float:
        return math.hypot(self.a, self.b)

    @property
    def rotation(self) -> float:
        """Rotation angle in radians."""
        return math.atan2(self.b, self.a)

    @property
    def matrix(self) -> np.ndarray:
        """2x3 affine matrix in the layout cv2.warpAffine expects."""
        return np.array(
            [
                [self.a, -self.b, self.tx],
                [self.b, self.a, self.ty],
            ],
            dtype=np.float64,
        )

    def apply(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return points @ self.matrix[:, :2].T + self.matrix[:, 2]


def _as_points(values, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim == 1:
        if arr.size % 2 != 0:
            raise InvalidLandmarksError(f"{name} has an odd number of coordinates ({arr.size})")
        arr = arr.reshape(-1, 2)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise InvalidLandmarksError(f"{name} must be a sequence of (x, y) points, got shape {arr.shape}")
    return arr


def estimate_similarity_transform(src, dst) -> SimilarityTransform:
    """
    Least-squares similarity transform mapping src points onto dst points.

    Args:
        src: Source landmarks, shape (N, 2) or flat (2N,)
        dst: Destination landmarks, same layout and count as src

    Returns:
        SimilarityTransform minimizing the mean squared error

    Raises:
        InvalidLandmarksError: Counts differ, fewer than 2 pairs, or src is degenerate
    """
    src_pts = _as_points(src, "src")
    dst_pts = _as_points(dst, "dst")

    if src_pts.shape != dst_pts.shape:
        raise InvalidLandmarksError(
            f"Landmark counts differ: {src_pts.shape[0]} source vs {dst_pts.shape[0]} destination"
        )
    m = src_pts.shape[0]
    if m < 2:
        raise InvalidLandmarksError(f"Need at least 2 point pairs, got {m}")

    sum_sx = sum_sy = sum_dx = sum_dy = 0.0
    sum_sx2 = sum_sy2 = 0.0
    sum_dx_sx = sum_dy_sy = sum_dx_sy = sum_dy_sx = 0.0

    for (sx, sy), (dx, dy) in zip(src_pts, dst_pts):
        sum_sx += sx
        sum_sy += sy
        sum_dx += dx
        sum_dy += dy
        sum_sx2 += sx * sx
        sum_sy2 += sy * sy
        sum_dx_sx += dx * sx
        sum_dy_sy += dy * sy
        sum_dx_sy += dx * sy
        sum_dy_sx += dy * sx

    inv_m = 1.0 / m
    sx_mean, sy_mean = sum_sx * inv_m, sum_sy * inv_m
    dx_mean, dy_mean = sum_dx * inv_m, sum_dy * inv_m

    # source variance and demeaned cross-covariances
    var_x = sum_sx2 * inv_m - sx_mean * sx_mean
    var_y = sum_sy2 * inv_m - sy_mean * sy_mean
    sxx = sum_dx_sx * inv_m - dx_mean * sx_mean
    syy = sum_dy_sy * inv_m - dy_mean * sy_mean
    sxy = sum_dx_sy * inv_m - dx_mean * sy_mean
    syx = sum_dy_sx * inv_m - dy_mean * sx_mean

    variance = var_x + var_y
    if variance <= 1e-12:
        raise InvalidLandmarksError("Source landmarks are degenerate (all points coincide)")

    a = (sxx + syy) / variance
    b = (syx - sxy) / variance
    tx = dx_mean - (a * sx_mean - b * sy_mean)
    ty = dy_mean - (b * sx_mean + a * sy_mean)

    return SimilarityTransform(a=a, b=b, tx=tx, ty=ty)


def reference_landmarks(size: int = REFERENCE_SIZE) -> np.ndarray:
    """Reference template scaled to a square crop of the given size."""
    return REFERENCE_LANDMARKS_112 * (size / REFERENCE_SIZE)


def align_face(image: np.ndarray, landmarks, size: int = REFERENCE_SIZE) -> np.ndarray:
    """
    Warp a face so its landmarks land on the reference template.

    Args:
        image: Frame as an HxWxC array
        landmarks: Five (x, y) landmarks in pixel coordinates
        size: Output crop side length

    Returns:
        Aligned size x size crop, ready for the face embedder
    """
    transform = estimate_similarity_transform(landmarks, reference_landmarks(size))
    return cv2.warpAffine(
        image,
        transform.matrix,
        (size, size),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )
