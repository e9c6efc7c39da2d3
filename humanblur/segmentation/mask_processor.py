"""
Mask Processing Utilities.

Handles:
- Probability map to binary mask conversion
- Morphological cleaning
- Confidence scoring
"""

from __future__ import annotations

from typing import Tuple
import numpy as np
from numpy.typing import NDArray
import cv2

from humanblur.core.contracts import Mask


class MaskProcessor:
    """
    Turns model output into pipeline masks.

    Ensures masks are:
    - Exactly frame-sized
    - Binary (0 or 255)
    - Optionally cleaned of speckle and pinholes
    """

    def __init__(
        self,
        segmentation_threshold: float = 0.6,
        confidence_scale: float = 10.0,
        clean_masks: bool = False,
        smoothing_kernel_size: int = 5,
        morphological_iterations: int = 1,
        min_area_threshold: int = 100,
    ):
        """
        Initialize mask processor.

        Args:
            segmentation_threshold: Probability above which a pixel is human
            confidence_scale: Multiplier applied to the human pixel fraction
            clean_masks: Run morphological cleaning on every mask
            smoothing_kernel_size: Structuring element size for cleaning
            morphological_iterations: Iterations for opening/closing
            min_area_threshold: Minimum component area kept by cleaning
        """
        self.segmentation_threshold = segmentation_threshold
        self.confidence_scale = confidence_scale
        self.clean_masks = clean_masks
        self.morphological_iterations = morphological_iterations
        self.min_area_threshold = min_area_threshold

        self._morph_kernel = cv2.getStructuringElement(
            cv2.MORPH_ELLIPSE,
            (smoothing_kernel_size, smoothing_kernel_size)
        )

    def to_mask(
        self,
        probabilities: NDArray[np.float32],
        size: Tuple[int, int],
    ) -> Mask:
        """
        Convert a per-pixel human probability map into a Mask.

        Args:
            probabilities: H' x W' (or H' x W' x 1) map in [0, 1]
            size: Target (width, height); the map is resized if needed

        Returns:
            Binary mask of exactly the target size
        """
        probs = np.asarray(probabilities, dtype=np.float32)
        if probs.ndim == 3:
            probs = probs[:, :, 0]

        width, height = size
        if probs.shape != (height, width):
            probs = cv2.resize(probs, (width, height), interpolation=cv2.INTER_LINEAR)

        alpha = (probs > self.segmentation_threshold).astype(np.uint8) * 255

        if self.clean_masks:
            alpha = self.clean_mask(alpha)

        return Mask(alpha)

    def clean_mask(self, alpha: NDArray[np.uint8]) -> NDArray[np.uint8]:
        """
        Clean a binary mask.

        Operations:
        1. Morphological opening (remove noise)
        2. Morphological closing (fill holes)
        3. Remove small disconnected regions
        """
        if alpha.size == 0:
            return alpha

        binary = (alpha > 0).astype(np.uint8) * 255

        opened = cv2.morphologyEx(
            binary,
            cv2.MORPH_OPEN,
            self._morph_kernel,
            iterations=self.morphological_iterations
        )
        closed = cv2.morphologyEx(
            opened,
            cv2.MORPH_CLOSE,
            self._morph_kernel,
            iterations=self.morphological_iterations
        )

        return self._remove_small_components(closed)

    def _remove_small_components(self, alpha: NDArray[np.uint8]) -> NDArray[np.uint8]:
        num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(
            alpha, connectivity=8
        )

        output = np.zeros_like(alpha)

        # Label 0 is background
        for i in range(1, num_labels):
            if stats[i, cv2.CC_STAT_AREA] >= self.min_area_threshold:
                output[labels == i] = 255

        return output

    def confidence(self, mask: Mask) -> float:
        """
        Confidence heuristic: human pixel fraction scaled and capped at 1.

        A frame one tenth covered by people already reports full
        confidence; an empty mask reports 0.
        """
        human_fraction = mask.coverage()
        if human_fraction <= 0:
            return 0.0
        return min(human_fraction * self.confidence_scale, 1.0)
