"""
Blur Compositing Engine.

Blurs a copy of the frame and selects, per pixel, the blurred or the
original color according to the detection mask.

All compositing is:
- Mask-confined (exact selection, no partial blending)
- Alpha-preserving
- A pure function of (frame, mask, intensity)
"""

from __future__ import annotations

import math
from typing import Optional
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from humanblur.core.contracts import (
    Frame,
    Mask,
    DEFAULT_INTENSITY,
    MAX_BLUR_RADIUS_PX,
    MASK_ALPHA_THRESHOLD,
    clamp_intensity,
)
from humanblur.core.errors import BlurError, ProcessingFailed, Unsupported


class BlurProcessingEngine:
    """
    Gaussian blur compositor.

    The scratch raster is engine-owned and reused across calls; one
    engine must only be driven from one call path at a time.
    """

    def __init__(
        self,
        default_intensity: int = DEFAULT_INTENSITY,
        max_blur_radius: int = MAX_BLUR_RADIUS_PX,
        mask_threshold: float = MASK_ALPHA_THRESHOLD,
    ):
        """
        Initialize blur engine.

        Args:
            default_intensity: Intensity used when a call does not pass one
            max_blur_radius: Blur radius at intensity 100, in pixels
            mask_threshold: Mask strength (0-1) above which a pixel is blurred

        Raises:
            Unsupported: The OpenCV raster path is unusable
        """
        self.max_blur_radius = max_blur_radius
        self.mask_threshold = mask_threshold
        self._blur_intensity = clamp_intensity(default_intensity)

        self._scratch: Optional[NDArray[np.uint8]] = None

        self._probe_raster_support()

    @staticmethod
    def _probe_raster_support():
        try:
            probe = np.zeros((2, 2, 4), dtype=np.uint8)
            cv2.GaussianBlur(probe, (0, 0), sigmaX=1.0)
        except (cv2.error, AttributeError) as e:
            raise Unsupported("OpenCV raster operations unavailable", cause=e) from e

    # ============================================================
    # PARAMETERS
    # ============================================================

    def set_blur_intensity(self, intensity: float):
        """Store the default intensity (clamped to 0-100)."""
        self._blur_intensity = clamp_intensity(intensity)

    @property
    def blur_intensity(self) -> int:
        return self._blur_intensity

    def blur_radius(self, intensity: float) -> int:
        """Linear map 0-100 -> 0-max_blur_radius pixels, rounded half up."""
        scaled = (clamp_intensity(intensity) / 100.0) * self.max_blur_radius
        return int(math.floor(scaled + 0.5))

    # ============================================================
    # COMPOSITING
    # ============================================================

    def apply_blur(
        self,
        frame: Frame,
        mask: Mask,
        intensity: Optional[float] = None,
    ) -> Frame:
        """
        Blur the masked (human) regions of a frame.

        Args:
            frame: Original RGBA frame
            mask: Detection mask of the same dimensions
            intensity: 0-100; the engine default when None

        Returns:
            New frame; the input is never modified

        Raises:
            ProcessingFailed: Missing inputs, dimension mismatch, or raster failure
        """
        if frame is None or mask is None:
            raise ProcessingFailed("Invalid input data provided")

        if not mask.matches(frame):
            raise ProcessingFailed(
                f"Frame and mask dimensions must match: frame "
                f"{frame.width}x{frame.height}, mask {mask.width}x{mask.height}"
            )

        if intensity is None:
            intensity = self._blur_intensity

        try:
            blurred = self._blur_into_scratch(frame.pixels, self.blur_radius(intensity))
            return Frame(self._composite(frame.pixels, blurred, mask.alpha))
        except BlurError:
            raise
        except Exception as e:
            raise ProcessingFailed("Failed to apply blur effect", cause=e) from e

    def apply_uniform_blur(self, frame: Frame, intensity: Optional[float] = None) -> Frame:
        """Blur the whole frame (degraded mode, no mask available)."""
        if frame is None:
            raise ProcessingFailed("Invalid input data provided")

        if intensity is None:
            intensity = self._blur_intensity

        try:
            blurred = self._blur_into_scratch(frame.pixels, self.blur_radius(intensity))
            result = blurred.copy()
            result[:, :, 3] = frame.pixels[:, :, 3]
            return Frame(result)
        except Exception as e:
            raise ProcessingFailed("Failed to apply uniform blur", cause=e) from e

    def _blur_into_scratch(
        self,
        pixels: NDArray[np.uint8],
        radius: int,
    ) -> NDArray[np.uint8]:
        """Gaussian-blur pixels into the scratch raster (sigma = radius)."""
        if self._scratch is None or self._scratch.shape != pixels.shape:
            self._scratch = np.empty(pixels.shape, dtype=np.uint8)

        if radius <= 0:
            np.copyto(self._scratch, pixels)
            return self._scratch

        cv2.GaussianBlur(
            pixels,
            (0, 0),
            sigmaX=float(radius),
            dst=self._scratch,
            sigmaY=float(radius),
            borderType=cv2.BORDER_REFLECT,
        )
        return self._scratch

    def _composite(
        self,
        original: NDArray[np.uint8],
        blurred: NDArray[np.uint8],
        alpha: NDArray[np.uint8],
    ) -> NDArray[np.uint8]:
        """Per-pixel selection; original alpha is always kept."""
        selected = (alpha.astype(np.float32) / 255.0) > self.mask_threshold

        result = np.array(original, copy=True)
        result[selected, :3] = blurred[selected, :3]
        return result

    def dispose(self):
        """Release the scratch raster."""
        self._scratch = None
        logger.debug("Blur engine disposed")
