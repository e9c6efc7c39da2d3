"""Unit tests for the demo entry point helpers."""
import numpy as np
import pytest

import main
from humanblur.core.capabilities import RuntimeCapabilities
from humanblur.core.config import BlurSettings, settings_from_dict
from humanblur.core.contracts import BlurStatus, PerformanceMetrics
from main import HumanBlurDemo, apply_cli_overrides, build_arg_parser, render_status_overlay


class TestArguments:

    def test_defaults(self):
        args = build_arg_parser().parse_args([])

        assert args.config is None
        assert args.device == 0
        assert args.intensity is None
        assert not args.no_workers

    def test_overrides_fold_into_settings(self):
        args = build_arg_parser().parse_args(
            ["--intensity", "120", "--no-workers", "--enable", "--log-level", "DEBUG"]
        )

        settings = apply_cli_overrides(BlurSettings(), args)

        assert settings.pipeline.intensity == 100
        assert settings.pipeline.use_workers is False
        assert settings.pipeline.enabled is True
        assert settings.logging.level == "DEBUG"
        assert settings.is_explicit("pipeline.intensity")
        assert settings.is_explicit("pipeline.use_workers")


def test_status_overlay_draws_in_place():
    image = np.zeros((240, 320, 3), dtype=np.uint8)
    status = BlurStatus(
        enabled=True,
        intensity=50,
        is_processing=False,
        performance=PerformanceMetrics(fps=24.0, average_processing_time_ms=20.0),
    )

    result = render_status_overlay(image, status, display_fps=30.0)

    assert result is image
    assert result.shape == (240, 320, 3)
    assert result.any()


def test_demo_keys_adjust_intensity():
    demo = HumanBlurDemo(settings_from_dict({"pipeline": {"intensity": 50}, "prefer_gpu": False}))
    try:
        assert demo.handle_key(ord('+'))
        assert demo.controller.get_config().intensity == 60

        assert demo.handle_key(ord('-'))
        assert demo.handle_key(ord('-'))
        assert demo.controller.get_config().intensity == 40

        assert not demo.handle_key(ord('q'))
    finally:
        demo.controller.dispose()


@pytest.fixture
def low_end_device(monkeypatch):
    caps = RuntimeCapabilities(
        cpu_count=2,
        total_memory_mb=2048.0,
        opencv_version="4.10.0",
        cuda_devices=1,
        mediapipe_available=True,
    )
    monkeypatch.setattr(main, "probe_capabilities", lambda: caps)
    return caps


class TestCapabilityDefaults:

    def test_unset_settings_follow_the_device(self, low_end_device):
        demo = HumanBlurDemo(settings_from_dict({}))
        try:
            config = demo.controller.get_config()
            assert config.use_workers is False
            assert config.intensity == 30
            assert demo.settings.workers.requested_workers == 1
            assert demo.controller._pool_settings.requested_workers == 1
            assert demo.settings.prefer_gpu is False
        finally:
            demo.controller.dispose()

    def test_explicit_settings_are_kept(self, low_end_device):
        settings = settings_from_dict({
            "pipeline": {"use_workers": True, "intensity": 80},
            "workers": {"requested_workers": 3},
            "prefer_gpu": True,
        })

        demo = HumanBlurDemo(settings)
        try:
            config = demo.controller.get_config()
            assert config.use_workers is True
            assert config.intensity == 80
            assert demo.controller._pool_settings.requested_workers == 3
            assert demo.settings.prefer_gpu is True
        finally:
            demo.controller.dispose()

    def test_cli_flags_beat_recommendations(self, low_end_device):
        args = build_arg_parser().parse_args(["--intensity", "70"])
        settings = apply_cli_overrides(settings_from_dict({}), args)

        demo = HumanBlurDemo(settings)
        try:
            assert demo.controller.get_config().intensity == 70
            assert demo.controller.get_config().use_workers is False
        finally:
            demo.controller.dispose()
