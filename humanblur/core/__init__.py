"""
Core contracts for the Human Blur Pipeline.

Per-frame data flow (NEVER REORDER):
1. Accept an RGBA frame from the caller
2. Decide pass-through, single-flight fallback, skip, or full processing
3. Segment humans into a mask (direct or pooled)
4. Composite a blurred copy into masked regions only
5. Record metrics and return a frame of identical dimensions
"""

from .contracts import (
    Frame,
    Mask,
    DetectionResult,
    PerformanceMetrics,
    PipelineConfig,
    PerformancePolicy,
    WorkerPoolSettings,
    BlurStatus,
    PipelineState,
)
from .errors import (
    BlurError,
    BlurErrorCode,
    ModelLoadFailed,
    DetectionFailed,
    ProcessingFailed,
    PerformanceDegraded,
    Unsupported,
)
