"""Pytest configuration and shared fixtures for the human blur pipeline.

Nothing here needs mediapipe or a camera: segmentation is replaced by
fake backends and detectors, and time by a manual clock.
"""
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import pytest
from loguru import logger

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from humanblur.core.contracts import Frame, Mask, DetectionResult, PipelineConfig
from humanblur.core.errors import DetectionFailed
from humanblur.segmentation.backends import SegmentationBackend
from humanblur.segmentation.detectors import Detector
from humanblur.segmentation.segmentation_service import SegmentationService


# ============================================================
# FAKES
# ============================================================

class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeBackend(SegmentationBackend):
    """Segmentation backend returning a fixed half-frame person."""

    name = "fake"

    def __init__(
        self,
        fail_load: bool = False,
        fail_segment: bool = False,
        load_delay: float = 0.0,
        downscale: int = 1,
        load_log: Optional[List[str]] = None,
    ):
        self.fail_load = fail_load
        self.fail_segment = fail_segment
        self.load_delay = load_delay
        self.downscale = downscale
        self.load_log = load_log if load_log is not None else []
        self.loaded = False
        self.closed = False
        self.segment_calls = 0

    def load(self) -> None:
        if self.load_delay:
            threading.Event().wait(self.load_delay)
        self.load_log.append(self.name)
        if self.fail_load:
            raise RuntimeError("model file corrupt")
        self.loaded = True

    def segment(self, rgb):
        self.segment_calls += 1
        if self.fail_segment:
            raise RuntimeError("inference crashed")
        height, width = rgb.shape[:2]
        height, width = max(1, height // self.downscale), max(1, width // self.downscale)
        probabilities = np.zeros((height, width), dtype=np.float32)
        probabilities[:, : width // 2] = 1.0
        return probabilities

    def close(self) -> None:
        self.closed = True


class FakeDetector(Detector):
    """
    Detector that marks the left half of every frame as human.

    processing_time_s advances the injected clock per call; a gate makes
    detect_humans block until released.
    """

    name = "fake"

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.processing_time_s = 0.005
        self.confidence = 0.8
        self.fail = False
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self.calls: List[Frame] = []
        self.initialize_calls = 0
        self.dispose_calls = 0

    def initialize(self) -> None:
        self.initialize_calls += 1

    def detect_humans(self, frame: Frame) -> DetectionResult:
        self.calls.append(frame)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.clock is not None:
            self.clock.advance(self.processing_time_s)
        if self.fail:
            raise DetectionFailed("fake detection failure")

        alpha = np.zeros((frame.height, frame.width), dtype=np.uint8)
        alpha[:, : frame.width // 2] = 255
        return DetectionResult(
            mask=Mask(alpha),
            confidence=self.confidence,
            processing_time_ms=self.processing_time_s * 1000,
        )

    def dispose(self) -> None:
        self.dispose_calls += 1


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(autouse=True)
def quiet_logger():
    """Keep loguru output to warnings during tests."""
    logger.remove()
    handler_id = logger.add(sys.stderr, level="WARNING")
    yield
    logger.remove(handler_id)


@pytest.fixture
def make_frame() -> Callable[..., Frame]:
    """Factory for seeded random RGBA frames."""
    def _make(width: int = 64, height: int = 48, seed: int = 0, opaque: bool = False) -> Frame:
        rng = np.random.default_rng(seed)
        pixels = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
        if opaque:
            pixels[:, :, 3] = 255
        return Frame(pixels)
    return _make


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_detector(fake_clock) -> FakeDetector:
    return FakeDetector(clock=fake_clock)


@pytest.fixture
def detector_factory(fake_detector):
    """Controller detector factory that hands out the shared fake and counts builds."""
    class _Factory:
        def __init__(self):
            self.builds = 0
            self.error: Optional[Exception] = None
            self.configs: List[PipelineConfig] = []

        def __call__(self, config: PipelineConfig) -> Detector:
            self.builds += 1
            self.configs.append(config)
            if self.error is not None:
                raise self.error
            fake_detector.initialize()
            return fake_detector

    return _Factory()


@pytest.fixture
def fake_backend_cls():
    return FakeBackend


@pytest.fixture
def make_service() -> Callable[..., SegmentationService]:
    """Factory for SegmentationService instances backed by FakeBackend."""
    def _make(**backend_kwargs) -> SegmentationService:
        return SegmentationService(
            backend_factories=[lambda: FakeBackend(**backend_kwargs)],
        )
    return _make


@pytest.fixture
def fixed_memory():
    """Deterministic memory probe."""
    return lambda: 256.0
