#!/usr/bin/env python3
"""
Human Blur Pipeline demo

Blurs people in a live webcam feed.

Usage:
    python main.py [--config CONFIG_PATH] [--device DEVICE_INDEX]

Keyboard Controls (video window focused):
    B     - Toggle blur on/off
    +/-   - Raise/lower blur intensity by 10
    C     - Run memory cleanup
    Q     - Quit
"""

from __future__ import annotations

import argparse
import time
from typing import Optional

import cv2
import numpy as np
from loguru import logger

from humanblur.core.capabilities import apply_recommendations, probe_capabilities
from humanblur.core.config import BlurSettings, load_settings
from humanblur.core.contracts import BlurStatus, Frame, clamp_intensity
from humanblur.core.errors import BlurError
from humanblur.core.log import setup_logging
from humanblur.pipeline import BlurController

INTENSITY_STEP = 10


# ============================================================
# OUTPUT RENDERER
# ============================================================

def render_status_overlay(image: np.ndarray, status: BlurStatus, display_fps: float) -> np.ndarray:
    """Draw pipeline status onto a BGR image in place and return it."""
    h, w = image.shape[:2]

    overlay = image.copy()
    cv2.rectangle(overlay, (10, 10), (330, 120), (0, 0, 0), -1)
    cv2.addWeighted(overlay, 0.6, image, 0.4, 0, image)

    if not status.enabled:
        color = (200, 200, 200)  # Grey when off
    elif status.fallback_mode:
        color = (0, 165, 255)  # Orange when degraded
    else:
        color = (0, 255, 0)

    label = "OFF"
    if status.enabled:
        label = "DEGRADED" if status.fallback_mode else "ON"

    lines = [
        f"Blur: {label}  Intensity: {status.intensity}",
        f"Display FPS: {display_fps:.1f}  Pipeline FPS: {status.performance.fps:.1f}",
        f"Avg: {status.performance.average_processing_time_ms:.1f}ms  "
        f"Conf: {status.performance.detection_accuracy:.2f}",
        f"Skipped: {status.frames_skipped}  Mem: {status.performance.memory_usage_mb:.0f}MB",
    ]
    for i, line in enumerate(lines):
        cv2.putText(
            image, line, (20, 35 + i * 22),
            cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1
        )

    cv2.putText(
        image, "B:Blur  +/-:Intensity  C:Cleanup  Q:Quit", (10, h - 10),
        cv2.FONT_HERSHEY_SIMPLEX, 0.5, (200, 200, 200), 1
    )
    return image


# ============================================================
# MAIN APPLICATION
# ============================================================

class HumanBlurDemo:
    """Webcam -> controller -> window."""

    def __init__(self, settings: BlurSettings, device_index: int = 0, window_name: str = "Human Blur"):
        self.settings = settings
        self.device_index = device_index
        self.window_name = window_name

        apply_recommendations(settings, probe_capabilities())

        self.controller = BlurController(
            config=settings.pipeline,
            policy=settings.policy,
            pool_settings=settings.workers,
            prefer_gpu=settings.prefer_gpu,
        )

    def handle_key(self, key: int) -> bool:
        """Apply one key press. Returns False when the user asked to quit."""
        if key == ord('q'):
            return False

        if key == ord('b'):
            try:
                self.controller.update_config(enabled=not self.controller.is_enabled)
            except BlurError as e:
                logger.error(f"Could not enable blur: {e}")
        elif key in (ord('+'), ord('=')):
            self.controller.set_intensity(self.controller.get_config().intensity + INTENSITY_STEP)
        elif key == ord('-'):
            self.controller.set_intensity(self.controller.get_config().intensity - INTENSITY_STEP)
        elif key == ord('c'):
            freed = self.controller.cleanup_memory()
            logger.info(f"Memory cleanup freed ~{freed:.1f}MB")

        return True

    def run(self):
        """Run the capture/display loop until Q or Ctrl+C."""
        logger.info("Starting Human Blur demo")
        logger.info("Press B to toggle blur, Q to quit")

        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            logger.error(f"Could not open video device {self.device_index}")
            self.controller.dispose()
            return

        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)

        frame_count = 0
        start_time = time.time()

        try:
            while True:
                ok, image = capture.read()
                if not ok:
                    logger.warning("Video device returned no frame, stopping")
                    break

                output = self.controller.process_frame(Frame.from_bgr(image))

                frame_count += 1
                elapsed = time.time() - start_time
                fps = frame_count / elapsed if elapsed > 0 else 0

                display = render_status_overlay(output.to_bgr(), self.controller.get_status(), fps)
                cv2.imshow(self.window_name, display)

                key = cv2.waitKey(1) & 0xFF
                if key != 0xFF and not self.handle_key(key):
                    break

        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            capture.release()
            self.controller.dispose()
            cv2.destroyAllWindows()
            logger.info("Demo stopped")


# ============================================================
# ENTRY POINT
# ============================================================

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Blur people in a live webcam feed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to settings file (default: config/settings.yaml)",
    )

    parser.add_argument(
        "--device", "-d",
        type=int,
        default=0,
        help="Video device index (default: 0)",
    )

    parser.add_argument(
        "--intensity", "-i",
        type=int,
        default=None,
        help="Initial blur intensity 0-100 (overrides settings)",
    )

    parser.add_argument(
        "--no-workers",
        action="store_true",
        help="Run detection on the main thread instead of the worker pool",
    )

    parser.add_argument(
        "--enable",
        action="store_true",
        help="Start with blur enabled",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides settings)",
    )

    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Log file path (overrides settings)",
    )

    return parser


def apply_cli_overrides(settings: BlurSettings, args: argparse.Namespace) -> BlurSettings:
    """Fold command line flags into loaded settings."""
    if args.intensity is not None:
        settings.pipeline.intensity = clamp_intensity(args.intensity)
        settings.explicit_keys.add("pipeline.intensity")
    if args.no_workers:
        settings.pipeline.use_workers = False
        settings.explicit_keys.add("pipeline.use_workers")
    if args.enable:
        settings.pipeline.enabled = True
    if args.log_level:
        settings.logging.level = args.log_level
    if args.log_file:
        settings.logging.file = args.log_file
    return settings


def main(argv: Optional[list] = None):
    """Main entry point."""
    args = build_arg_parser().parse_args(argv)

    settings = apply_cli_overrides(load_settings(args.config), args)
    setup_logging(settings.logging.level, settings.logging.file)

    try:
        demo = HumanBlurDemo(settings, device_index=args.device)
    except BlurError as e:
        logger.error(f"Failed to start: {e}")
        raise SystemExit(1)

    demo.run()


if __name__ == "__main__":
    main()
