"""
Performance Governor.

Tracks rolling per-frame metrics and decides when the pipeline should
shed work.

Two independent policies:
- Frame skipping: on above 80% of the frame budget, off below 60%;
  while on, every Nth frame bypasses detection
- Fallback mode: entered after K consecutive frames over the threshold
  (or a processing failure), left once frames are back under it,
  checked every Mth frame since entry
"""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Callable, List, Optional
import psutil
from loguru import logger

from humanblur.core.contracts import PerformanceMetrics, PerformancePolicy


class GovernorEvent(Enum):
    """Policy transitions reported back to the controller."""
    SKIPPING_STARTED = "skipping_started"
    SKIPPING_STOPPED = "skipping_stopped"
    FALLBACK_ENTERED = "fallback_entered"
    FALLBACK_EXITED = "fallback_exited"


def process_memory_mb() -> float:
    """Resident set size of this process."""
    return psutil.Process().memory_info().rss / 1024 / 1024


class PerformanceGovernor:
    """
    Rolling metrics plus skip and fallback policies.

    Not thread-safe; the controller calls it from its single in-flight path.
    """

    def __init__(
        self,
        policy: Optional[PerformancePolicy] = None,
        threshold_ms: float = 50.0,
        memory_probe: Callable[[], float] = process_memory_mb,
    ):
        """
        Initialize governor.

        Args:
            policy: Skip and fallback tuning
            threshold_ms: Per-frame processing threshold for fallback mode
            memory_probe: Returns current memory use in MB
        """
        self.policy = policy or PerformancePolicy()
        self.threshold_ms = threshold_ms
        self._memory_probe = memory_probe
        self.reset()

    def reset(self):
        """Forget all history and leave both degraded policies."""
        self._processing_times: deque[float] = deque(maxlen=self.policy.history_size)
        self._metrics = PerformanceMetrics()
        self._last_frame_time_ms: Optional[float] = None
        self._frame_count = 0
        self._total_confidence = 0.0

        self._frame_skipping = False
        self._skip_counter = 0
        self._frames_skipped = 0

        self._fallback_mode = False
        self._consecutive_slow_frames = 0
        self._frames_since_fallback = 0

    # ============================================================
    # PER-FRAME HOOKS
    # ============================================================

    def should_skip(self) -> bool:
        """Called once per incoming frame; True means bypass detection."""
        if not self._frame_skipping:
            return False

        self._skip_counter += 1
        if self._skip_counter % self.policy.frame_skip_interval == 0:
            self._frames_skipped += 1
            return True
        return False

    def record_frame(
        self,
        processing_time_ms: float,
        confidence: float,
        now_ms: float,
    ) -> List[GovernorEvent]:
        """
        Record one completed (non-skipped) frame.

        Args:
            processing_time_ms: Detection + compositing time
            confidence: Detection confidence (0-1)
            now_ms: Monotonic completion timestamp

        Returns:
            Policy transitions caused by this frame
        """
        self._update_metrics(processing_time_ms, confidence, now_ms)

        events: List[GovernorEvent] = []
        skip_event = self._evaluate_skipping()
        if skip_event is not None:
            events.append(skip_event)

        fallback_event = self._evaluate_fallback(processing_time_ms)
        if fallback_event is not None:
            events.append(fallback_event)

        return events

    def enter_fallback(self, reason: str) -> bool:
        """Force fallback mode. Returns True if this changed the mode."""
        if self._fallback_mode:
            return False

        self._fallback_mode = True
        self._frames_since_fallback = 0
        logger.warning(f"Entering fallback mode: {reason}")
        return True

    # ============================================================
    # POLICIES
    # ============================================================

    def _update_metrics(self, processing_time_ms: float, confidence: float, now_ms: float):
        self._processing_times.append(processing_time_ms)
        self._metrics.average_processing_time_ms = (
            sum(self._processing_times) / len(self._processing_times)
        )

        if self._last_frame_time_ms is not None:
            delta = now_ms - self._last_frame_time_ms
            if delta > 0:
                self._metrics.fps = 1000.0 / delta
        self._last_frame_time_ms = now_ms

        self._frame_count += 1
        self._total_confidence += confidence
        self._metrics.detection_accuracy = self._total_confidence / self._frame_count

        self._metrics.memory_usage_mb = self._memory_probe()

    def _evaluate_skipping(self) -> Optional[GovernorEvent]:
        average = self._metrics.average_processing_time_ms
        budget = self.policy.frame_budget_ms

        if not self._frame_skipping and average > budget * self.policy.skip_enable_ratio:
            self._frame_skipping = True
            self._skip_counter = 0
            logger.info(
                f"Frame skipping enabled: average {average:.1f}ms > "
                f"{budget * self.policy.skip_enable_ratio:.1f}ms"
            )
            return GovernorEvent.SKIPPING_STARTED

        if self._frame_skipping and average < budget * self.policy.skip_disable_ratio:
            self._frame_skipping = False
            logger.info(f"Frame skipping disabled: average {average:.1f}ms")
            return GovernorEvent.SKIPPING_STOPPED

        return None

    def _evaluate_fallback(self, processing_time_ms: float) -> Optional[GovernorEvent]:
        if self._fallback_mode:
            self._frames_since_fallback += 1

        if processing_time_ms > self.threshold_ms:
            self._consecutive_slow_frames += 1
            if self._consecutive_slow_frames >= self.policy.slow_frame_limit:
                if self.enter_fallback(
                    f"{self._consecutive_slow_frames} consecutive frames over "
                    f"{self.threshold_ms:.0f}ms"
                ):
                    return GovernorEvent.FALLBACK_ENTERED
            return None

        self._consecutive_slow_frames = 0

        if (
            self._fallback_mode
            and self._frames_since_fallback > 0
            and self._frames_since_fallback % self.policy.fallback_recovery_frames == 0
        ):
            self._fallback_mode = False
            self._frames_since_fallback = 0
            logger.info("Exiting fallback mode - performance recovered")
            return GovernorEvent.FALLBACK_EXITED

        return None

    # ============================================================
    # READ-ONLY VIEW
    # ============================================================

    def metrics(self) -> PerformanceMetrics:
        """Copy of the current metrics."""
        return PerformanceMetrics(
            fps=self._metrics.fps,
            average_processing_time_ms=self._metrics.average_processing_time_ms,
            detection_accuracy=self._metrics.detection_accuracy,
            memory_usage_mb=self._metrics.memory_usage_mb,
        )

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    @property
    def frame_skipping(self) -> bool:
        return self._frame_skipping

    @property
    def frames_skipped(self) -> int:
        return self._frames_skipped

    @property
    def frames_recorded(self) -> int:
        return self._frame_count

    @property
    def consecutive_slow_frames(self) -> int:
        return self._consecutive_slow_frames
