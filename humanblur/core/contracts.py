"""
Core data contracts for the Human Blur Pipeline.

All components must adhere to these contracts for:
- Immutable frame hand-off between stages
- Mask/frame dimension agreement
- Truthful status reporting
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, FrozenSet
import numpy as np
from numpy.typing import NDArray
import cv2


# ============================================================
# CONSTANTS
# ============================================================

DEFAULT_INTENSITY = 50
MIN_INTENSITY = 0
MAX_INTENSITY = 100
TARGET_FPS = 24
MAX_PROCESSING_TIME_MS = 50.0
MAX_BLUR_RADIUS_PX = 20
MASK_ALPHA_THRESHOLD = 0.1
MAX_FRAME_PIXELS = 2560 * 1440

DEFAULT_MODEL_URL = (
    "https://storage.googleapis.com/mediapipe-models/image_segmenter/"
    "selfie_segmenter/float16/latest/selfie_segmenter.tflite"
)


def clamp_intensity(intensity: float) -> int:
    """Clamp an intensity to [0, 100] and round it to a whole percentage."""
    value = max(MIN_INTENSITY, min(MAX_INTENSITY, float(intensity)))
    return int(math.floor(value + 0.5))


# ============================================================
# ENUMERATIONS
# ============================================================

class PipelineState(Enum):
    """Lifecycle state of the pipeline controller."""
    DISABLED = "disabled"
    ENABLING = "enabling"
    READY = "ready"
    DEGRADED = "degraded"


# Allowed controller transitions. Anything may return to DISABLED.
STATE_TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = {
    PipelineState.DISABLED: frozenset({PipelineState.DISABLED, PipelineState.ENABLING}),
    PipelineState.ENABLING: frozenset({PipelineState.READY, PipelineState.DISABLED}),
    PipelineState.READY: frozenset({PipelineState.DEGRADED, PipelineState.DISABLED}),
    PipelineState.DEGRADED: frozenset({PipelineState.READY, PipelineState.DISABLED}),
}


# ============================================================
# PIXEL BUFFERS
# ============================================================

@dataclass(frozen=True, eq=False)
class Frame:
    """
    One RGBA raster, the pipeline input/output unit.

    The stored array is a read-only view so no stage can mutate a frame
    another component still references.
    """
    pixels: NDArray[np.uint8]  # H x W x 4, RGBA

    def __post_init__(self):
        pixels = self.pixels
        if not isinstance(pixels, np.ndarray):
            raise ValueError("Frame pixels must be a numpy array")
        if pixels.dtype != np.uint8:
            raise ValueError(f"Frame pixels must be uint8, got {pixels.dtype}")
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"Frame pixels must be H x W x 4, got {pixels.shape}")
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise ValueError("Frame must have non-zero width and height")

        view = pixels.view()
        view.flags.writeable = False
        object.__setattr__(self, "pixels", view)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> int:
        """Total pixel count."""
        return self.width * self.height

    @classmethod
    def from_bytes(cls, width: int, height: int, data: bytes) -> Frame:
        """Build a frame from a contiguous RGBA byte buffer."""
        expected = 4 * width * height
        if len(data) != expected:
            raise ValueError(
                f"RGBA buffer holds {len(data)} bytes, expected {expected} "
                f"for {width}x{height}"
            )
        pixels = np.frombuffer(data, dtype=np.uint8).reshape(height, width, 4)
        return cls(pixels)

    @classmethod
    def from_bgr(cls, image: NDArray[np.uint8]) -> Frame:
        """Build a frame from an OpenCV BGR image (opaque alpha)."""
        return cls(cv2.cvtColor(image, cv2.COLOR_BGR2RGBA))

    @classmethod
    def blank(cls, width: int, height: int, value: int = 0) -> Frame:
        pixels = np.full((height, width, 4), value, dtype=np.uint8)
        pixels[:, :, 3] = 255
        return cls(pixels)

    def to_bytes(self) -> bytes:
        return np.ascontiguousarray(self.pixels).tobytes()

    def to_bgr(self) -> NDArray[np.uint8]:
        return cv2.cvtColor(np.ascontiguousarray(self.pixels), cv2.COLOR_RGBA2BGR)

    def rgb(self) -> NDArray[np.uint8]:
        """Contiguous copy of the RGB planes, as segmentation models expect."""
        return np.ascontiguousarray(self.pixels[:, :, :3])


@dataclass(frozen=True, eq=False)
class Mask:
    """
    Per-pixel detection strength aligned to a frame.

    0 = background, 255 = certainly human.
    """
    alpha: NDArray[np.uint8]  # H x W

    def __post_init__(self):
        alpha = self.alpha
        if not isinstance(alpha, np.ndarray) or alpha.dtype != np.uint8:
            raise ValueError("Mask alpha must be a uint8 numpy array")
        if alpha.ndim != 2:
            raise ValueError(f"Mask alpha must be H x W, got {alpha.shape}")

        view = alpha.view()
        view.flags.writeable = False
        object.__setattr__(self, "alpha", view)

    @property
    def width(self) -> int:
        return int(self.alpha.shape[1])

    @property
    def height(self) -> int:
        return int(self.alpha.shape[0])

    @classmethod
    def from_rgba(cls, pixels: NDArray[np.uint8]) -> Mask:
        """Read detection strength from the alpha channel of an RGBA buffer."""
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"RGBA mask buffer must be H x W x 4, got {pixels.shape}")
        return cls(np.ascontiguousarray(pixels[:, :, 3]))

    @classmethod
    def full(cls, width: int, height: int) -> Mask:
        return cls(np.full((height, width), 255, dtype=np.uint8))

    @classmethod
    def empty(cls, width: int, height: int) -> Mask:
        return cls(np.zeros((height, width), dtype=np.uint8))

    def matches(self, frame: Frame) -> bool:
        return self.width == frame.width and self.height == frame.height

    def coverage(self) -> float:
        """Fraction of pixels with any detection strength."""
        if self.alpha.size == 0:
            return 0.0
        return float(np.count_nonzero(self.alpha)) / self.alpha.size


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class DetectionResult:
    """Result from one segmentation invocation."""
    mask: Mask
    confidence: float  # 0-1
    processing_time_ms: float


@dataclass
class PerformanceMetrics:
    """Rolling performance metrics for one controller instance."""
    fps: float = 0.0
    average_processing_time_ms: float = 0.0
    detection_accuracy: float = 0.0  # running mean of confidence
    memory_usage_mb: float = 0.0


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class PipelineConfig:
    """Configuration owned by the pipeline controller."""
    enabled: bool = False
    intensity: int = DEFAULT_INTENSITY  # 0-100
    performance_threshold_ms: float = MAX_PROCESSING_TIME_MS
    model_source: Optional[str] = None  # path or URL, None = default model
    fallback_mode: bool = False  # set by the controller

    use_workers: bool = True
    max_frame_pixels: int = MAX_FRAME_PIXELS

    def __post_init__(self):
        self.intensity = clamp_intensity(self.intensity)


@dataclass
class PerformancePolicy:
    """Tuning for frame skipping and fallback mode."""
    target_fps: float = TARGET_FPS
    history_size: int = 30

    # Frame skipping, as fractions of the per-frame budget
    skip_enable_ratio: float = 0.8
    skip_disable_ratio: float = 0.6
    frame_skip_interval: int = 2  # skip every Nth frame while active

    # Fallback mode
    slow_frame_limit: int = 3
    fallback_recovery_frames: int = 10

    def __post_init__(self):
        if self.target_fps <= 0:
            raise ValueError(f"target_fps must be positive, got {self.target_fps}")
        if self.history_size < 1:
            raise ValueError(f"history_size must be at least 1, got {self.history_size}")
        if self.frame_skip_interval < 2:
            raise ValueError(
                f"frame_skip_interval must be at least 2, got {self.frame_skip_interval}"
            )
        if self.slow_frame_limit < 1:
            raise ValueError(f"slow_frame_limit must be at least 1, got {self.slow_frame_limit}")
        if self.fallback_recovery_frames < 1:
            raise ValueError(
                f"fallback_recovery_frames must be at least 1, got {self.fallback_recovery_frames}"
            )
        # Hysteresis: the off threshold sits below the on threshold
        if self.skip_disable_ratio >= self.skip_enable_ratio:
            raise ValueError(
                f"skip_disable_ratio ({self.skip_disable_ratio}) must be below "
                f"skip_enable_ratio ({self.skip_enable_ratio})"
            )

    @property
    def frame_budget_ms(self) -> float:
        return 1000.0 / self.target_fps


@dataclass
class WorkerPoolSettings:
    """Sizing and deadlines for the detection worker pool."""
    requested_workers: int = 2
    max_workers: int = 4
    max_queue_size: int = 10
    request_timeout_s: float = 5.0
    init_timeout_s: float = 10.0

    def __post_init__(self):
        if self.max_queue_size < 1:
            raise ValueError(f"max_queue_size must be at least 1, got {self.max_queue_size}")
        if self.request_timeout_s <= 0 or self.init_timeout_s <= 0:
            raise ValueError(
                f"Timeouts must be positive, got request={self.request_timeout_s}s "
                f"init={self.init_timeout_s}s"
            )


# ============================================================
# STATUS
# ============================================================

@dataclass
class BlurStatus:
    """Read-only projection of controller state, computed on demand."""
    enabled: bool
    intensity: int
    is_processing: bool
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)

    state: PipelineState = PipelineState.DISABLED
    fallback_mode: bool = False
    frame_skipping: bool = False
    frames_skipped: int = 0

    @property
    def degraded(self) -> bool:
        return self.state == PipelineState.DEGRADED
