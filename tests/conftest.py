"""
Pytest configuration and fixtures.
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeScorer:
    """Speaking scorer returning a fixed probability, optionally failing for some boxes."""

    def __init__(self, probability: float = 0.7, fail_left_of: float = -1.0):
        self.probability = probability
        self.fail_left_of = fail_left_of
        self.calls = 0

    def score(self, region, image):
        self.calls += 1
        x, y, w, h = region
        if x + w / 2 < self.fail_left_of:
            raise RuntimeError("model inference failed")
        return self.probability


@pytest.fixture
def clock():
    """Fake clock starting at t=0."""
    return FakeClock()


@pytest.fixture
def sample_image():
    """Create a sample test image (640x480, 3 channels) with a face-like blob."""
    import cv2
    import numpy as np

    image = np.zeros((480, 640, 3), dtype=np.uint8)
    cv2.circle(image, (320, 240), 100, (200, 180, 160), thickness=-1)  # Skin-like color
    return image


@pytest.fixture
def make_detection():
    """Factory for detections in normalized coordinates."""
    from facevoice.services.face_tracker import Detection

    def _make(x=0.4, y=0.3, w=0.2, h=0.25, confidence=0.9, embedding=None, landmarks=None):
        return Detection(
            bbox=(x, y, w, h),
            confidence=confidence,
            embedding=embedding,
            landmarks=landmarks,
        )

    return _make


@pytest.fixture
def scorer_factory(mocker):
    """Mock factory handing out FakeScorers."""
    return mocker.MagicMock(side_effect=lambda: FakeScorer())
