"""
Blur Pipeline Controller.

Owns configuration, lifecycle and the per-frame policy:
    frame -> detector -> blur engine -> frame

Guarantees:
- process_frame() never raises and never queues; a busy controller
  returns the last processed frame (or the input) immediately
- Disabled controllers pass frames through untouched
- Status is computed on demand from live state
"""

from __future__ import annotations

import gc
import threading
import time
from dataclasses import fields, replace
from typing import Callable, Optional
from loguru import logger

from humanblur.core.contracts import (
    Frame,
    Mask,
    BlurStatus,
    PipelineConfig,
    PipelineState,
    PerformancePolicy,
    WorkerPoolSettings,
    STATE_TRANSITIONS,
    clamp_intensity,
)
from humanblur.segmentation.detectors import Detector, initialize_detector
from humanblur.segmentation.segmentation_service import SegmentationService
from humanblur.transforms.blur_engine import BlurProcessingEngine
from .governor import GovernorEvent, PerformanceGovernor, process_memory_mb

DetectorFactory = Callable[[PipelineConfig], Detector]

_CONFIG_KEYS = frozenset(f.name for f in fields(PipelineConfig))


class BlurController:
    """
    Human blur pipeline controller.

    One logical caller drives process_frame(); enable/disable/dispose may
    be called from any thread.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        detector_factory: Optional[DetectorFactory] = None,
        engine: Optional[BlurProcessingEngine] = None,
        policy: Optional[PerformancePolicy] = None,
        pool_settings: Optional[WorkerPoolSettings] = None,
        prefer_gpu: Optional[bool] = None,
        clock: Callable[[], float] = time.perf_counter,
        memory_probe: Callable[[], float] = process_memory_mb,
    ):
        """
        Initialize controller. Nothing is loaded until enable().

        Args:
            config: Initial configuration; enabled=True enables immediately
            detector_factory: Builds an initialized Detector from the config
            engine: Blur compositor
            policy: Frame skipping and fallback tuning
            pool_settings: Worker pool sizing for the default detector
            prefer_gpu: GPU delegate preference for the default detector
            clock: Monotonic clock in seconds
            memory_probe: Returns current memory use in MB
        """
        self._config = replace(config) if config is not None else PipelineConfig()
        self._config.fallback_mode = False
        start_enabled = self._config.enabled
        self._config.enabled = False

        self._pool_settings = pool_settings
        self._prefer_gpu = prefer_gpu
        self._detector_factory = detector_factory or self._build_default_detector
        self._engine = engine or BlurProcessingEngine()
        self._engine.set_blur_intensity(self._config.intensity)

        self._governor = PerformanceGovernor(
            policy,
            threshold_ms=self._config.performance_threshold_ms,
            memory_probe=memory_probe,
        )
        self._clock = clock
        self._memory_probe = memory_probe

        self._lock = threading.RLock()
        self._enable_lock = threading.Lock()
        self._state = PipelineState.DISABLED
        self._detector: Optional[Detector] = None

        # Single-flight bookkeeping
        self._in_flight = False
        self._generation = 0

        # Last known results
        self._last_mask: Optional[Mask] = None
        self._last_processed: Optional[Frame] = None

        if start_enabled:
            self.enable()

    def _build_default_detector(self, config: PipelineConfig) -> Detector:
        def service_factory() -> SegmentationService:
            return SegmentationService(
                model_source=config.model_source,
                prefer_gpu=self._prefer_gpu,
            )

        return initialize_detector(
            use_workers=config.use_workers,
            service_factory=service_factory,
            pool_settings=self._pool_settings,
            direct_fallback=config.use_workers,
        )

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def _transition(self, new_state: PipelineState):
        """Move to new_state. Caller holds self._lock."""
        if new_state not in STATE_TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal pipeline transition {self._state.value} -> {new_state.value}"
            )
        if new_state != self._state:
            logger.debug(f"Pipeline state: {self._state.value} -> {new_state.value}")
        self._state = new_state

    def enable(self):
        """
        Initialize detection (once) and start processing frames.

        No-op when already enabled.

        Raises:
            ModelLoadFailed: Detection could not be initialized
            Unsupported: No segmentation runtime is available
        """
        with self._enable_lock:
            with self._lock:
                if self._state != PipelineState.DISABLED:
                    return
                self._transition(PipelineState.ENABLING)
                generation = self._generation
                detector = self._detector

            try:
                if detector is None:
                    detector = self._detector_factory(self._config)
            except Exception:
                with self._lock:
                    if self._state == PipelineState.ENABLING:
                        self._transition(PipelineState.DISABLED)
                logger.error("Failed to enable blur pipeline")
                raise

            with self._lock:
                self._detector = detector
                if generation != self._generation:
                    logger.info("Blur pipeline disabled during initialization")
                    return

                self._governor.reset()
                self._config.fallback_mode = False
                self._config.enabled = True
                self._engine.set_blur_intensity(self._config.intensity)
                self._transition(PipelineState.READY)

        logger.info(f"Blur pipeline enabled ({getattr(detector, 'name', 'detector')} detection)")

    def disable(self):
        """Stop processing. Always succeeds; detection stays loaded."""
        with self._lock:
            self._generation += 1
            self._in_flight = False
            self._governor.reset()
            self._config.fallback_mode = False
            self._config.enabled = False
            self._last_mask = None
            self._last_processed = None
            was = self._state
            self._transition(PipelineState.DISABLED)

        if was != PipelineState.DISABLED:
            logger.info("Blur pipeline disabled")

    def dispose(self):
        """Disable, then release detection and the blur engine."""
        self.disable()

        with self._enable_lock:
            with self._lock:
                detector = self._detector
                self._detector = None

            if detector is not None:
                detector.dispose()
            self._engine.dispose()

        logger.info("Blur pipeline disposed")

    # ============================================================
    # FRAME PROCESSING
    # ============================================================

    def process_frame(self, frame: Frame) -> Frame:
        """
        Blur human regions of one frame.

        Args:
            frame: Input RGBA frame

        Returns:
            Blurred frame, or a fallback (last processed frame / input)
            when disabled, busy or failing. Never raises.
        """
        with self._lock:
            if self._state not in (PipelineState.READY, PipelineState.DEGRADED) or self._detector is None:
                return frame

            if frame.size > self._config.max_frame_pixels:
                logger.warning(
                    f"Frame {frame.width}x{frame.height} exceeds "
                    f"{self._config.max_frame_pixels} pixels, passing through"
                )
                return frame

            if self._in_flight:
                last = self._last_processed
                if last is not None and last.width == frame.width and last.height == frame.height:
                    return last
                return frame

            skip = self._governor.should_skip()
            self._in_flight = True
            generation = self._generation
            detector = self._detector
            intensity = self._config.intensity
            last_mask = self._last_mask
            has_history = self._last_processed is not None

        if skip:
            return self._process_skipped(frame, generation, intensity, last_mask, has_history)
        return self._process_detected(frame, generation, detector, intensity)

    def _process_detected(
        self,
        frame: Frame,
        generation: int,
        detector: Detector,
        intensity: int,
    ) -> Frame:
        start = self._clock()
        try:
            detection = detector.detect_humans(frame)
            result = self._engine.apply_blur(frame, detection.mask, intensity)

            finished = self._clock()
            processing_time_ms = (finished - start) * 1000.0

            with self._lock:
                if generation != self._generation:
                    return result

                events = self._governor.record_frame(
                    processing_time_ms,
                    detection.confidence,
                    now_ms=finished * 1000.0,
                )
                self._last_mask = detection.mask
                self._last_processed = result
                self._apply_events(events)
                self._in_flight = False
        except Exception as e:
            self._handle_failure(generation, e)
            return frame

        logger.debug(
            f"Frame processed in {processing_time_ms:.1f}ms "
            f"(confidence {detection.confidence:.2f})"
        )
        return result

    def _process_skipped(
        self,
        frame: Frame,
        generation: int,
        intensity: int,
        last_mask: Optional[Mask],
        has_history: bool,
    ) -> Frame:
        try:
            if last_mask is not None and last_mask.matches(frame):
                result = self._engine.apply_blur(frame, last_mask, intensity)
            elif has_history:
                result = self._engine.apply_uniform_blur(frame, intensity)
            else:
                result = frame
        except Exception as e:
            self._handle_failure(generation, e)
            return frame

        with self._lock:
            if generation == self._generation:
                self._in_flight = False
        return result

    def _handle_failure(self, generation: int, error: Exception):
        logger.error(f"Frame processing failed: {error}")
        with self._lock:
            if generation != self._generation:
                return
            self._in_flight = False
            if self._governor.enter_fallback(f"processing error ({type(error).__name__})"):
                self._apply_events([GovernorEvent.FALLBACK_ENTERED])

    def _apply_events(self, events):
        """Mirror governor transitions into state and config. Caller holds the lock."""
        for event in events:
            if event == GovernorEvent.FALLBACK_ENTERED:
                self._config.fallback_mode = True
                if self._state == PipelineState.READY:
                    self._transition(PipelineState.DEGRADED)
            elif event == GovernorEvent.FALLBACK_EXITED:
                self._config.fallback_mode = False
                if self._state == PipelineState.DEGRADED:
                    self._transition(PipelineState.READY)

    # ============================================================
    # CONFIGURATION
    # ============================================================

    def set_intensity(self, intensity: float):
        """Clamp to 0-100 and forward to the blur engine."""
        with self._lock:
            self._config.intensity = clamp_intensity(intensity)
            self._engine.set_blur_intensity(self._config.intensity)

    def get_config(self) -> PipelineConfig:
        """Copy of the current configuration."""
        with self._lock:
            return replace(self._config)

    def update_config(self, **changes):
        """
        Merge configuration changes.

        intensity is clamped; flipping enabled enables or disables the
        pipeline; fallback_mode is controller-owned and ignored.
        model_source and use_workers apply the next time detection is built.

        Raises:
            ValueError: Unknown configuration key
            ModelLoadFailed: enabled=True and initialization failed
        """
        unknown = set(changes) - _CONFIG_KEYS
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")

        if "fallback_mode" in changes:
            changes.pop("fallback_mode")
            logger.warning("fallback_mode is managed by the controller, ignoring")

        enabled = changes.pop("enabled", None)

        with self._lock:
            for key, value in changes.items():
                if key == "intensity":
                    self.set_intensity(value)
                elif key == "performance_threshold_ms":
                    self._config.performance_threshold_ms = float(value)
                    self._governor.threshold_ms = float(value)
                else:
                    setattr(self._config, key, value)

        if enabled is not None and bool(enabled) != self.is_enabled:
            if enabled:
                self.enable()
            else:
                self.disable()

    # ============================================================
    # STATUS / MAINTENANCE
    # ============================================================

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_enabled(self) -> bool:
        return self._state in (PipelineState.READY, PipelineState.DEGRADED)

    def get_status(self) -> BlurStatus:
        with self._lock:
            return BlurStatus(
                enabled=self.is_enabled,
                intensity=self._config.intensity,
                is_processing=self._in_flight,
                performance=self._governor.metrics(),
                state=self._state,
                fallback_mode=self._governor.fallback_mode,
                frame_skipping=self._governor.frame_skipping,
                frames_skipped=self._governor.frames_skipped,
            )

    def cleanup_memory(self) -> float:
        """
        Drop cached results and run the garbage collector.

        Intended to be called by the application on its own schedule.

        Returns:
            Estimated memory released, in MB (never negative)
        """
        before = self._memory_probe()
        with self._lock:
            self._last_mask = None
            self._last_processed = None
        gc.collect()
        freed = max(0.0, before - self._memory_probe())
        logger.debug(f"Memory cleanup released ~{freed:.1f}MB")
        return freed
