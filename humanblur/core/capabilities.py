"""
Runtime capability probe.

Answers the questions the pipeline asks before it starts:
- How many parallel execution contexts make sense?
- Is a GPU delegate worth trying?
- Is the segmentation runtime importable at all?
"""

from __future__ import annotations

import importlib.util
import os
from dataclasses import dataclass
from typing import Dict, Any
import cv2
import psutil
from loguru import logger

from humanblur.core.config import BlurSettings


@dataclass
class RuntimeCapabilities:
    """What the current process can use."""
    cpu_count: int
    total_memory_mb: float
    opencv_version: str
    cuda_devices: int
    mediapipe_available: bool

    @property
    def gpu_available(self) -> bool:
        return self.cuda_devices > 0

    @property
    def is_low_end(self) -> bool:
        return self.cpu_count <= 2 or self.total_memory_mb < 4096


def _count_cuda_devices() -> int:
    cuda = getattr(cv2, "cuda", None)
    if cuda is None:
        return 0
    try:
        return int(cuda.getCudaEnabledDeviceCount())
    except cv2.error:
        return 0


def probe_capabilities() -> RuntimeCapabilities:
    """Probe the current process."""
    caps = RuntimeCapabilities(
        cpu_count=psutil.cpu_count(logical=True) or os.cpu_count() or 1,
        total_memory_mb=psutil.virtual_memory().total / 1024 / 1024,
        opencv_version=cv2.__version__,
        cuda_devices=_count_cuda_devices(),
        mediapipe_available=importlib.util.find_spec("mediapipe") is not None,
    )
    logger.debug(f"Runtime capabilities: {caps}")
    return caps


def recommend_settings(caps: RuntimeCapabilities) -> Dict[str, Any]:
    """
    Map capabilities to starting settings.

    Weak devices get in-process detection, one worker and a lighter
    blur; everything else gets the pooled path.
    """
    if caps.is_low_end:
        return {
            "use_workers": False,
            "requested_workers": 1,
            "intensity": 30,
            "prefer_gpu": False,
        }

    return {
        "use_workers": True,
        "requested_workers": min(caps.cpu_count, 4),
        "intensity": 50,
        "prefer_gpu": caps.gpu_available,
    }


def apply_recommendations(settings: BlurSettings, caps: RuntimeCapabilities) -> BlurSettings:
    """
    Fill in the settings the source left unset from ``recommend_settings``.

    Values named in ``settings.explicit_keys`` always win; ``prefer_gpu``
    is filled whenever it is None.

    Args:
        settings: Loaded settings, modified in place
        caps: Probed runtime capabilities

    Returns:
        The same settings object
    """
    recommended = recommend_settings(caps)
    applied = []

    if not settings.is_explicit("pipeline.use_workers"):
        settings.pipeline.use_workers = recommended["use_workers"]
        applied.append(f"use_workers={recommended['use_workers']}")

    if not settings.is_explicit("workers.requested_workers"):
        settings.workers.requested_workers = recommended["requested_workers"]
        applied.append(f"requested_workers={recommended['requested_workers']}")

    if not settings.is_explicit("pipeline.intensity"):
        settings.pipeline.intensity = recommended["intensity"]
        applied.append(f"intensity={recommended['intensity']}")

    if settings.prefer_gpu is None:
        settings.prefer_gpu = recommended["prefer_gpu"]
        applied.append(f"prefer_gpu={recommended['prefer_gpu']}")

    if applied:
        logger.info(f"Applied capability defaults: {', '.join(applied)}")
    return settings
