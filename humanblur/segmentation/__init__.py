"""
Segmentation module using MediaPipe person segmentation.

Responsibilities:
- Model loading with GPU/CPU backend fallback
- Probability map to mask conversion
- Confidence scoring
- Direct and pooled detection paths
"""

from .segmentation_service import SegmentationService
from .mask_processor import MaskProcessor
from .detectors import Detector, DirectDetector, PooledDetector, initialize_detector
