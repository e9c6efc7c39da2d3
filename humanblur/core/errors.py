"""
Error taxonomy for the Human Blur Pipeline.

Initialization errors propagate to the caller; per-frame errors are
caught by the controller and degrade to pass-through.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class BlurErrorCode(Enum):
    """Kind of failure, independent of the raising component."""
    MODEL_LOAD_FAILED = "MODEL_LOAD_FAILED"
    DETECTION_FAILED = "DETECTION_FAILED"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    PERFORMANCE_DEGRADED = "PERFORMANCE_DEGRADED"
    UNSUPPORTED = "UNSUPPORTED"


class BlurError(Exception):
    """Base class for all pipeline errors."""

    default_code = BlurErrorCode.PROCESSING_FAILED

    def __init__(
        self,
        message: str,
        code: Optional[BlurErrorCode] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ModelLoadFailed(BlurError):
    """No backend could load the segmentation model."""
    default_code = BlurErrorCode.MODEL_LOAD_FAILED


class DetectionFailed(BlurError):
    """A single detection call failed."""
    default_code = BlurErrorCode.DETECTION_FAILED


class ProcessingFailed(BlurError):
    """Compositing rejected its inputs or the raster operation failed."""
    default_code = BlurErrorCode.PROCESSING_FAILED


class PerformanceDegraded(BlurError):
    """Advisory; surfaced through fallback-mode status rather than raised per frame."""
    default_code = BlurErrorCode.PERFORMANCE_DEGRADED


class Unsupported(BlurError):
    """The runtime lacks a required capability."""
    default_code = BlurErrorCode.UNSUPPORTED


# ============================================================
# WORKER POOL FAILURES
# ============================================================

class WorkerPoolError(DetectionFailed):
    """Pool-specific detection failure; a direct retry may still succeed."""


class QueueFullError(WorkerPoolError):
    """Too many outstanding requests."""


class WorkerTimeoutError(WorkerPoolError):
    """No worker response within the deadline."""


class WorkerCrashedError(WorkerPoolError):
    """The execution context raised an unexpected error."""


class PoolDisposedError(WorkerPoolError):
    """The pool was disposed while the request was pending."""
