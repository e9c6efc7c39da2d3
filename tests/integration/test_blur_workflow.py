"""End-to-end pipeline scenarios with the real blur engine and worker pool.

Segmentation is faked; everything else (controller, governor, engine,
pool threads) runs for real.
"""
import threading

import numpy as np
import pytest

from humanblur.core.contracts import PipelineState, WorkerPoolSettings
from humanblur.core.errors import PoolDisposedError
from humanblur.segmentation.detectors import PooledDetector, initialize_detector
from humanblur.segmentation.segmentation_service import SegmentationService
from humanblur.transforms.blur_engine import BlurProcessingEngine
from humanblur.pipeline.controller import BlurController

pytestmark = pytest.mark.integration


class RecordingEngine(BlurProcessingEngine):
    """Blur engine that remembers what it was asked to composite."""

    def __init__(self):
        super().__init__()
        self.blur_calls = []

    def apply_blur(self, frame, mask, intensity=None):
        self.blur_calls.append((frame, mask, intensity))
        return super().apply_blur(frame, mask, intensity)


@pytest.fixture
def engine():
    return RecordingEngine()


@pytest.fixture
def controller(detector_factory, engine, fake_clock, fixed_memory):
    controller = BlurController(
        detector_factory=detector_factory,
        engine=engine,
        clock=fake_clock,
        memory_probe=fixed_memory,
    )
    yield controller
    controller.dispose()


class TestScenarios:

    def test_enable_set_intensity_process(self, controller, engine, fake_detector, make_frame):
        """Scenario A: one frame is detected once and composited at the chosen intensity."""
        frame_a = make_frame(width=80, height=60)

        controller.enable()
        controller.set_intensity(75)
        result = controller.process_frame(frame_a)

        assert fake_detector.calls == [frame_a]
        assert len(engine.blur_calls) == 1
        blurred_frame, mask, intensity = engine.blur_calls[0]
        assert blurred_frame is frame_a
        assert mask.matches(frame_a)
        assert intensity == 75
        assert (result.width, result.height) == (frame_a.width, frame_a.height)

    def test_sustained_slow_frames(self, controller, fake_detector, make_frame):
        """Scenario B: slow frames degrade status but every call returns a valid frame."""
        controller.enable()
        fake_detector.processing_time_s = 0.080  # threshold is 50ms

        results = []
        for seed in range(5):
            frame = make_frame(seed=seed)
            result = controller.process_frame(frame)
            assert (result.width, result.height) == (frame.width, frame.height)
            results.append(result)

        status = controller.get_status()
        assert status.fallback_mode
        assert status.state == PipelineState.DEGRADED
        assert status.performance.average_processing_time_ms == pytest.approx(80.0)
        assert status.performance.average_processing_time_ms > controller.get_config().performance_threshold_ms
        # Skipping kicked in after the first slow frame: every other frame skipped
        assert len(fake_detector.calls) == 3
        assert status.frames_skipped == 2

    def test_disable_mid_processing(self, controller, fake_detector, make_frame):
        """Scenario C: disabling during detection makes the next call a pass-through."""
        controller.enable()
        fake_detector.gate = threading.Event()
        in_flight = {}

        worker = threading.Thread(
            target=lambda: in_flight.setdefault("result", controller.process_frame(make_frame(seed=1)))
        )
        worker.start()
        assert fake_detector.started.wait(timeout=5)

        controller.disable()
        frame = make_frame(seed=2)
        assert controller.process_frame(frame) is frame

        fake_detector.gate.set()
        worker.join(timeout=5)

        status = controller.get_status()
        assert "result" in in_flight
        assert not status.enabled
        assert not status.is_processing
        # The late result is not recorded into the fresh session
        assert status.performance.average_processing_time_ms == 0.0
        assert controller._last_processed is None

    def test_pass_through_is_byte_identical(self, controller, make_frame):
        frame = make_frame()
        original = frame.to_bytes()

        assert controller.process_frame(frame).to_bytes() == original


class TestPooledPipeline:

    @pytest.fixture
    def service_factory(self, fake_backend_cls):
        return lambda: SegmentationService(backend_factories=[fake_backend_cls])

    def test_controller_over_worker_pool(self, service_factory, fixed_memory, make_frame):
        settings = WorkerPoolSettings(requested_workers=2)

        def pooled(config):
            return initialize_detector(
                use_workers=True,
                service_factory=service_factory,
                pool_settings=settings,
                direct_fallback=True,
            )

        controller = BlurController(detector_factory=pooled, memory_probe=fixed_memory)
        try:
            controller.enable()
            frame = make_frame(width=64, height=48)

            result = controller.process_frame(frame)

            assert isinstance(controller._detector, PooledDetector)
            half = frame.width // 2
            assert np.array_equal(result.pixels[:, half:], frame.pixels[:, half:])
            assert not np.array_equal(result.pixels[:, :half, :3], frame.pixels[:, :half, :3])
            assert controller.get_status().performance.detection_accuracy == pytest.approx(1.0)
        finally:
            controller.dispose()

        assert controller._detector is None

    def test_dispose_settles_outstanding_requests(self, fake_backend_cls, make_frame):
        """Test futures issued just before disposal reject rather than hang."""
        gate = threading.Event()

        class SlowService(SegmentationService):
            def detect_humans(self, frame):
                gate.wait(timeout=5)
                return super().detect_humans(frame)

        from humanblur.workers.worker_pool import WorkerPoolManager

        pool = WorkerPoolManager(
            WorkerPoolSettings(requested_workers=1),
            service_factory=lambda: SlowService(backend_factories=[fake_backend_cls]),
            hardware_parallelism=2,
        )
        pool.initialize()
        future = pool.submit(make_frame())

        threading.Timer(0.2, gate.set).start()
        pool.dispose()

        assert isinstance(future.exception(timeout=1), PoolDisposedError)
