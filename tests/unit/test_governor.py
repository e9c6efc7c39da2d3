"""Unit tests for the performance governor policies."""
import pytest

from humanblur.core.contracts import PerformancePolicy
from humanblur.pipeline.governor import GovernorEvent, PerformanceGovernor


@pytest.fixture
def governor(fixed_memory):
    return PerformanceGovernor(PerformancePolicy(), threshold_ms=50.0, memory_probe=fixed_memory)


def _record(governor, times_ms, start_ms=0.0, step_ms=100.0, confidence=0.5):
    events = []
    now = start_ms
    for t in times_ms:
        now += step_ms
        events.extend(governor.record_frame(t, confidence, now))
    return events


class TestMetrics:

    def test_average_fps_and_accuracy(self, governor):
        governor.record_frame(10.0, 1.0, now_ms=1000.0)
        governor.record_frame(20.0, 0.0, now_ms=1040.0)

        metrics = governor.metrics()
        assert metrics.average_processing_time_ms == pytest.approx(15.0)
        assert metrics.fps == pytest.approx(25.0)
        assert metrics.detection_accuracy == pytest.approx(0.5)
        assert metrics.memory_usage_mb == 256.0

    def test_history_is_bounded(self, fixed_memory):
        governor = PerformanceGovernor(
            PerformancePolicy(history_size=3, target_fps=1),
            memory_probe=fixed_memory,
        )
        _record(governor, [100.0, 1.0, 1.0, 1.0])

        assert governor.metrics().average_processing_time_ms == pytest.approx(1.0)

    def test_metrics_are_a_copy(self, governor):
        snapshot = governor.metrics()
        governor.record_frame(10.0, 1.0, now_ms=10.0)

        assert snapshot.average_processing_time_ms == 0.0

    def test_reset(self, governor):
        _record(governor, [60.0, 60.0, 60.0])
        governor.reset()

        assert governor.metrics().average_processing_time_ms == 0.0
        assert not governor.fallback_mode
        assert not governor.frame_skipping
        assert governor.frames_recorded == 0


class TestFrameSkipping:

    def test_off_by_default(self, governor):
        assert not governor.should_skip()

    def test_enables_above_80_percent_of_budget(self, governor):
        # budget 41.67ms -> enable above 33.3ms
        assert _record(governor, [30.0]) == []
        events = _record(governor, [45.0])

        assert GovernorEvent.SKIPPING_STARTED in events
        assert governor.frame_skipping

    def test_skips_every_second_frame(self, governor):
        _record(governor, [40.0])

        decisions = [governor.should_skip() for _ in range(6)]

        assert decisions == [False, True, False, True, False, True]
        assert governor.frames_skipped == 3

    def test_hysteresis(self, fixed_memory):
        governor = PerformanceGovernor(
            PerformancePolicy(history_size=1),
            threshold_ms=1000.0,
            memory_probe=fixed_memory,
        )
        _record(governor, [40.0])
        assert governor.frame_skipping

        # Between 60% (25ms) and 80% (33.3ms): stays on
        _record(governor, [30.0])
        assert governor.frame_skipping

        events = _record(governor, [20.0])
        assert GovernorEvent.SKIPPING_STOPPED in events
        assert not governor.frame_skipping


class TestFallbackMode:

    def test_enters_after_three_consecutive_slow_frames(self, governor):
        assert GovernorEvent.FALLBACK_ENTERED not in _record(governor, [60.0, 60.0])
        assert not governor.fallback_mode

        events = _record(governor, [60.0])

        assert GovernorEvent.FALLBACK_ENTERED in events
        assert governor.fallback_mode

    def test_fast_frame_resets_streak(self, governor):
        _record(governor, [60.0, 60.0, 10.0, 60.0, 60.0])

        assert not governor.fallback_mode
        assert governor.consecutive_slow_frames == 2

    def test_exits_on_tenth_frame_since_entry(self, governor):
        _record(governor, [60.0, 60.0, 60.0])

        _record(governor, [5.0] * 9)
        assert governor.fallback_mode

        events = _record(governor, [5.0])
        assert GovernorEvent.FALLBACK_EXITED in events
        assert not governor.fallback_mode

    def test_slow_check_frame_delays_exit(self, governor):
        _record(governor, [60.0, 60.0, 60.0])
        _record(governor, [5.0] * 9 + [60.0])
        assert governor.fallback_mode

        # Next check point is the 20th frame since entry
        _record(governor, [5.0] * 9)
        assert governor.fallback_mode
        _record(governor, [5.0])
        assert not governor.fallback_mode

    def test_forced_entry(self, governor):
        assert governor.enter_fallback("processing error")
        assert not governor.enter_fallback("again")
        assert governor.fallback_mode
