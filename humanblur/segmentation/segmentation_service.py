"""
Segmentation Service.

Wraps a pretrained person-segmentation model and turns a frame into a
DetectionResult (mask, confidence, latency).

Guarantees:
- initialize() runs at most once at a time and is idempotent
- Masks always match the frame's dimensions
- Every inference failure surfaces as DetectionFailed
"""

from __future__ import annotations

import threading
import time
from typing import Optional, Sequence
from loguru import logger

from humanblur.core.capabilities import probe_capabilities
from humanblur.core.contracts import Frame, DetectionResult
from humanblur.core.errors import (
    BlurError,
    DetectionFailed,
    ModelLoadFailed,
)
from .backends import BackendFactory, SegmentationBackend, build_backend_chain
from .mask_processor import MaskProcessor


class SegmentationService:
    """
    Person segmentation with backend fallback.

    One instance holds one model; it is not shared across threads.
    """

    def __init__(
        self,
        model_source: Optional[str] = None,
        prefer_gpu: Optional[bool] = None,
        backend_factories: Optional[Sequence[BackendFactory]] = None,
        mask_processor: Optional[MaskProcessor] = None,
    ):
        """
        Initialize the service (does not load the model).

        Args:
            model_source: Path or URL of the model; None = default selfie segmenter
            prefer_gpu: Try the GPU delegate first; None = decide from capabilities
            backend_factories: Explicit backend chain, tried in order
            mask_processor: Mask conversion and confidence policy
        """
        self.model_source = model_source
        self.prefer_gpu = prefer_gpu
        self.mask_processor = mask_processor or MaskProcessor()

        self._backend_factories = list(backend_factories) if backend_factories else None
        self._backend: Optional[SegmentationBackend] = None
        self._init_lock = threading.Lock()
        self._is_initialized = False

        # Performance tracking
        self._inference_times: list[float] = []

    def initialize(self) -> None:
        """
        Load the model on the first backend that accepts it.

        Concurrent callers block on the in-flight initialization.

        Raises:
            Unsupported: No segmentation runtime is installed
            ModelLoadFailed: Every backend failed to load
        """
        with self._init_lock:
            if self._is_initialized:
                return

            factories = self._backend_factories
            if factories is None:
                prefer_gpu = self.prefer_gpu
                if prefer_gpu is None:
                    prefer_gpu = probe_capabilities().gpu_available
                factories = build_backend_chain(self.model_source, prefer_gpu)

            last_error: Optional[BaseException] = None
            for factory in factories:
                backend = None
                try:
                    backend = factory()
                    backend.load()
                except Exception as e:
                    name = backend.name if backend is not None else repr(factory)
                    logger.warning(f"Segmentation backend {name} failed to load: {e}")
                    last_error = e
                    continue

                self._backend = backend
                self._is_initialized = True
                logger.info(f"Segmentation service initialized with {backend.name}")
                return

            if isinstance(last_error, BlurError) and not isinstance(last_error, ModelLoadFailed):
                raise last_error

            raise ModelLoadFailed(
                "No segmentation backend could load the model",
                cause=last_error,
            )

    def detect_humans(self, frame: Frame) -> DetectionResult:
        """
        Segment humans in a frame.

        Returns:
            DetectionResult with a frame-sized binary mask

        Raises:
            DetectionFailed: Not initialized, or inference failed
        """
        if not self._is_initialized or self._backend is None:
            raise DetectionFailed("Segmentation service not initialized")

        start_time = time.perf_counter()

        try:
            probabilities = self._backend.segment(frame.rgb())
            mask = self.mask_processor.to_mask(probabilities, (frame.width, frame.height))
        except Exception as e:
            raise DetectionFailed("Failed to detect humans in frame", cause=e) from e

        processing_time = (time.perf_counter() - start_time) * 1000
        self._inference_times.append(processing_time)
        if len(self._inference_times) > 100:
            self._inference_times.pop(0)

        return DetectionResult(
            mask=mask,
            confidence=self.mask_processor.confidence(mask),
            processing_time_ms=processing_time,
        )

    def dispose(self) -> None:
        """Release the model. Safe to call repeatedly."""
        with self._init_lock:
            if self._backend is not None:
                try:
                    self._backend.close()
                except Exception as e:
                    logger.warning(f"Error closing backend {self._backend.name}: {e}")
                self._backend = None
            if self._is_initialized:
                logger.info("Segmentation service disposed")
            self._is_initialized = False
            self._inference_times.clear()

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    @property
    def backend_name(self) -> Optional[str]:
        return self._backend.name if self._backend is not None else None

    @property
    def average_inference_time_ms(self) -> float:
        if not self._inference_times:
            return 0.0
        recent = self._inference_times[-30:]
        return sum(recent) / len(recent)
