"""
Compositing engine.

Guarantees:
- Mask-confined blur
- Frame dimensions preserved
- Deterministic output for fixed inputs
"""

from .blur_engine import BlurProcessingEngine
