"""
Detection paths.

The controller talks to one Detector, chosen at initialization:
- PooledDetector: inference on worker contexts, optional direct retry
- DirectDetector: inference on the caller's thread

initialize_detector() tries the pooled path first, falls back to the
direct path, and retries with exponential backoff.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, TYPE_CHECKING
from loguru import logger

from humanblur.core.contracts import Frame, DetectionResult, WorkerPoolSettings
from humanblur.core.errors import ModelLoadFailed, DetectionFailed, WorkerPoolError, Unsupported
from .segmentation_service import SegmentationService

if TYPE_CHECKING:
    from humanblur.workers.worker_pool import WorkerPoolManager

ServiceFactory = Callable[[], SegmentationService]


class Detector(ABC):
    """Abstract detection path."""

    name: str = "detector"

    @abstractmethod
    def initialize(self) -> None:
        """Load models / start contexts. Raise ModelLoadFailed on failure."""

    @abstractmethod
    def detect_humans(self, frame: Frame) -> DetectionResult:
        """Detect humans. Raise DetectionFailed on failure."""

    @abstractmethod
    def dispose(self) -> None:
        """Release everything. Idempotent."""


class DirectDetector(Detector):
    """In-process inference with a single SegmentationService."""

    name = "direct"

    def __init__(self, service: SegmentationService):
        self.service = service

    def initialize(self) -> None:
        self.service.initialize()

    def detect_humans(self, frame: Frame) -> DetectionResult:
        return self.service.detect_humans(frame)

    def dispose(self) -> None:
        self.service.dispose()


class PooledDetector(Detector):
    """
    Inference on a worker pool.

    Pool-specific failures (timeout, queue full, crash) are retried
    through the direct fallback when one is available.
    """

    name = "pooled"

    def __init__(
        self,
        pool: "WorkerPoolManager",
        direct_fallback: Optional[DirectDetector] = None,
    ):
        self.pool = pool
        self.direct_fallback = direct_fallback

    def initialize(self) -> None:
        self.pool.initialize()
        if self.direct_fallback is not None:
            try:
                self.direct_fallback.initialize()
            except ModelLoadFailed as e:
                logger.warning(f"Direct fallback unavailable, pooled detection only: {e}")
                self.direct_fallback = None

    def detect_humans(self, frame: Frame) -> DetectionResult:
        try:
            return self.pool.detect_humans(frame)
        except WorkerPoolError as e:
            if self.direct_fallback is None:
                raise
            logger.warning(f"Pooled detection failed, retrying directly: {e.message}")
            try:
                return self.direct_fallback.detect_humans(frame)
            except DetectionFailed as fallback_error:
                raise DetectionFailed(
                    "Both pooled and direct detection failed",
                    cause=fallback_error,
                ) from fallback_error

    def dispose(self) -> None:
        self.pool.dispose()
        if self.direct_fallback is not None:
            self.direct_fallback.dispose()


def initialize_detector(
    use_workers: bool = True,
    service_factory: Optional[ServiceFactory] = None,
    pool_settings: Optional[WorkerPoolSettings] = None,
    direct_fallback: bool = False,
    max_retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> Detector:
    """
    Build and initialize a detector with retry and path fallback.

    Attempt 0 uses the pool (when allowed); its failure switches to the
    direct path immediately. Later failures back off for
    min(1s * 2^attempt, 5s) before retrying.

    Args:
        use_workers: Try the pooled path first
        service_factory: Builds SegmentationService instances
        pool_settings: Worker pool sizing and deadlines
        direct_fallback: Give the pooled path an in-process retry
        max_retries: Retries after the first attempt
        sleep: Backoff sleeper

    Raises:
        Unsupported: No segmentation runtime is available
        ModelLoadFailed: All attempts failed
    """
    service_factory = service_factory or SegmentationService
    pooled = use_workers

    for attempt in range(max_retries + 1):
        detector: Optional[Detector] = None
        try:
            if pooled:
                from humanblur.workers.worker_pool import WorkerPoolManager

                fallback = DirectDetector(service_factory()) if direct_fallback else None
                detector = PooledDetector(
                    WorkerPoolManager(pool_settings, service_factory),
                    direct_fallback=fallback,
                )
            else:
                detector = DirectDetector(service_factory())

            detector.initialize()
            logger.info(f"Human detection initialized with {detector.name} processing")
            return detector

        except Unsupported:
            raise
        except Exception as e:
            logger.warning(f"Detector initialization attempt {attempt + 1} failed: {e}")
            if detector is not None:
                detector.dispose()

            if attempt == 0 and pooled:
                pooled = False
                logger.info("Falling back to direct processing after worker initialization failure")
                continue

            if attempt < max_retries:
                delay = min(1.0 * (2 ** attempt), 5.0)
                sleep(delay)
                continue

            if isinstance(e, ModelLoadFailed):
                raise
            raise ModelLoadFailed(
                "Failed to initialize human detection after all retries",
                cause=e,
            ) from e

    raise ModelLoadFailed("Failed to initialize human detection")
