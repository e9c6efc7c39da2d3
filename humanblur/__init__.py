"""
Real-time Human Blur Pipeline

Detects human figures in a live RGBA frame stream and blurs only those
regions, while governing its own workload to stay inside a per-frame
latency budget.

Top Priorities (strict order):
1. Never block or drop a frame (degrade to pass-through instead)
2. Status always reflects the truth (enabled, degraded, metrics)
3. Blur only what the segmentation mask marks as human
4. Stay within the per-frame budget by skipping or degrading
"""

__version__ = "0.1.0"
__author__ = "Human Blur Pipeline Team"
