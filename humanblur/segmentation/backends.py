"""
Segmentation model backends.

To add a backend:
1. Inherit from SegmentationBackend
2. Implement load(), segment() and close()
3. Add a factory for it in build_backend_chain()

Backends are tried in order until one loads:
1. MediaPipe Tasks ImageSegmenter, GPU delegate
2. MediaPipe Tasks ImageSegmenter, CPU delegate
3. MediaPipe legacy selfie-segmentation solution
"""

from __future__ import annotations

import hashlib
import importlib.util
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from humanblur.core.contracts import DEFAULT_MODEL_URL
from humanblur.core.errors import ModelLoadFailed, Unsupported

MODEL_CACHE_DIR = Path.home() / ".cache" / "humanblur" / "models"

BackendFactory = Callable[[], "SegmentationBackend"]


def mediapipe_available() -> bool:
    return importlib.util.find_spec("mediapipe") is not None


def resolve_model_source(
    model_source: Optional[str],
    cache_dir: Path = MODEL_CACHE_DIR,
) -> Path:
    """
    Resolve a model locator to a local file.

    Paths are returned as-is; http(s) URLs are downloaded once into the cache.
    """
    source = model_source or DEFAULT_MODEL_URL

    if not source.startswith(("http://", "https://")):
        path = Path(source).expanduser()
        if not path.exists():
            raise ModelLoadFailed(f"Model file not found: {path}")
        return path

    digest = hashlib.sha1(source.encode("utf-8")).hexdigest()[:12]
    target = cache_dir / f"{digest}-{Path(source).name}"
    if target.exists():
        return target

    cache_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Downloading segmentation model from {source}")
    partial = target.with_suffix(target.suffix + ".part")
    try:
        urllib.request.urlretrieve(source, partial)
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise ModelLoadFailed(f"Failed to download model from {source}", cause=e) from e

    partial.rename(target)
    logger.info(f"Model cached at {target}")
    return target


class SegmentationBackend(ABC):
    """Abstract base class for person-segmentation models."""

    name: str = "backend"

    @abstractmethod
    def load(self) -> None:
        """Load the model. Raise on failure."""

    @abstractmethod
    def segment(self, rgb: NDArray[np.uint8]) -> NDArray[np.float32]:
        """
        Segment one RGB image.

        Args:
            rgb: H x W x 3 uint8 image

        Returns:
            Per-pixel human probability in [0, 1]; may be lower resolution
        """

    @abstractmethod
    def close(self) -> None:
        """Release model memory."""


class MediaPipeTasksBackend(SegmentationBackend):
    """MediaPipe Tasks ImageSegmenter with an explicit delegate."""

    def __init__(self, model_source: Optional[str] = None, delegate: str = "cpu"):
        self.model_source = model_source
        self.delegate = delegate
        self.name = f"mediapipe-tasks-{delegate}"
        self._segmenter = None
        self._mp = None

    def load(self) -> None:
        import mediapipe as mp
        from mediapipe.tasks.python import vision, BaseOptions

        model_path = resolve_model_source(self.model_source)
        delegate = (
            BaseOptions.Delegate.GPU if self.delegate == "gpu"
            else BaseOptions.Delegate.CPU
        )

        options = vision.ImageSegmenterOptions(
            base_options=BaseOptions(
                model_asset_path=str(model_path),
                delegate=delegate,
            ),
            running_mode=vision.RunningMode.IMAGE,
            output_category_mask=False,
            output_confidence_masks=True,
        )
        self._segmenter = vision.ImageSegmenter.create_from_options(options)
        self._mp = mp

    def segment(self, rgb: NDArray[np.uint8]) -> NDArray[np.float32]:
        if self._segmenter is None:
            raise RuntimeError("Backend not loaded")

        mp_image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=rgb)
        result = self._segmenter.segment(mp_image)
        masks = result.confidence_masks

        if not masks:
            return np.zeros(rgb.shape[:2], dtype=np.float32)
        if len(masks) == 1:
            return np.asarray(masks[0].numpy_view(), dtype=np.float32)

        # Multi-class models put background first
        return 1.0 - np.asarray(masks[0].numpy_view(), dtype=np.float32)

    def close(self) -> None:
        if self._segmenter is not None:
            self._segmenter.close()
            self._segmenter = None


class MediaPipeSolutionBackend(SegmentationBackend):
    """Legacy mp.solutions selfie segmentation, bundled model, CPU only."""

    name = "mediapipe-solution"

    def __init__(self, model_selection: int = 1):
        self.model_selection = model_selection  # 0=close-range, 1=landscape
        self._segmentation = None

    def load(self) -> None:
        import mediapipe as mp

        solutions = getattr(mp, "solutions", None)
        if solutions is None or not hasattr(solutions, "selfie_segmentation"):
            raise RuntimeError("mediapipe build has no legacy selfie_segmentation solution")

        self._segmentation = solutions.selfie_segmentation.SelfieSegmentation(
            model_selection=self.model_selection
        )

    def segment(self, rgb: NDArray[np.uint8]) -> NDArray[np.float32]:
        if self._segmentation is None:
            raise RuntimeError("Backend not loaded")

        results = self._segmentation.process(rgb)
        if results.segmentation_mask is None:
            return np.zeros(rgb.shape[:2], dtype=np.float32)
        return np.asarray(results.segmentation_mask, dtype=np.float32)

    def close(self) -> None:
        if self._segmentation is not None:
            self._segmentation.close()
            self._segmentation = None


def build_backend_chain(
    model_source: Optional[str] = None,
    prefer_gpu: bool = False,
) -> List[BackendFactory]:
    """Ordered backend factories for the given model and device preference."""
    if not mediapipe_available():
        raise Unsupported("mediapipe is not installed; no segmentation runtime available")

    chain: List[BackendFactory] = []
    if prefer_gpu:
        chain.append(lambda: MediaPipeTasksBackend(model_source, delegate="gpu"))
    chain.append(lambda: MediaPipeTasksBackend(model_source, delegate="cpu"))

    # The bundled legacy model only applies when no explicit model was asked for
    if model_source is None:
        chain.append(MediaPipeSolutionBackend)

    return chain
