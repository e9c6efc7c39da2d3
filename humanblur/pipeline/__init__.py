"""
Pipeline control.

Handles:
- Enable/disable lifecycle
- Per-frame single-flight processing
- Frame skipping and fallback mode
"""

from .controller import BlurController
from .governor import PerformanceGovernor, GovernorEvent
