"""
Worker pool for off-thread detection.

Responsibilities:
- Per-context model instances
- Round-robin load balancing
- Timeouts, backpressure and crash isolation
"""

from .worker_pool import WorkerPoolManager, WorkerPoolStatus, ExecutionContext
