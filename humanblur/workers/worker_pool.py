"""
Worker Pool Manager.

Owns a small set of execution contexts, each with its own
SegmentationService, so slow inference never runs on the caller's thread.

Guarantees:
- Round-robin dispatch over live contexts
- Bounded outstanding requests (backpressure, not buffering)
- Every request settles: response, timeout, crash, or disposal
- One deadline thread per pool, however many requests are outstanding
"""

from __future__ import annotations

import heapq
import itertools
import queue
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from loguru import logger

from humanblur.core.capabilities import probe_capabilities
from humanblur.core.contracts import Frame, DetectionResult, WorkerPoolSettings
from humanblur.core.errors import (
    BlurError,
    DetectionFailed,
    ModelLoadFailed,
    QueueFullError,
    WorkerTimeoutError,
    WorkerCrashedError,
    PoolDisposedError,
)
from humanblur.segmentation.segmentation_service import SegmentationService

ServiceFactory = Callable[[], SegmentationService]

_INITIALIZE = "initialize"
_DETECT = "detect"


@dataclass
class _Request:
    request_id: int
    kind: str
    frame: Optional[Frame] = None


@dataclass
class _Pending:
    future: Future
    context_index: int
    kind: str


@dataclass
class WorkerPoolStatus:
    initialized: bool
    worker_count: int
    live_workers: int
    pending_requests: int
    queue_utilization: float


class _DeadlineSweeper:
    """
    Expires request deadlines for one pool from a single thread.

    Deadlines sit in a heap keyed on the monotonic clock. Settled requests
    are not removed; the expiry callback ignores ids it no longer knows.
    """

    def __init__(self, on_expire: Callable[[int], None]):
        self._on_expire = on_expire
        self._deadlines: List[Tuple[float, int]] = []
        self._condition = threading.Condition()
        self._stopped = False
        self._thread = threading.Thread(
            target=self._run,
            name="humanblur-deadlines",
            daemon=True,
        )

    def start(self):
        self._thread.start()

    def schedule(self, request_id: int, timeout_s: float):
        with self._condition:
            heapq.heappush(self._deadlines, (time.monotonic() + timeout_s, request_id))
            self._condition.notify()

    def stop(self, timeout: float = 2.0):
        with self._condition:
            self._stopped = True
            self._deadlines.clear()
            self._condition.notify()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _run(self):
        while True:
            with self._condition:
                while not self._stopped:
                    if not self._deadlines:
                        self._condition.wait()
                        continue
                    remaining = self._deadlines[0][0] - time.monotonic()
                    if remaining <= 0:
                        break
                    self._condition.wait(timeout=remaining)

                if self._stopped:
                    return
                _, request_id = heapq.heappop(self._deadlines)

            # Outside the condition: expiry takes the pool lock
            self._on_expire(request_id)


class ExecutionContext:
    """
    One worker thread with its own inbox and segmentation model.

    Handles one request at a time. A BlurError from the service answers
    that request only; any other exception retires the context.
    """

    def __init__(
        self,
        index: int,
        service: SegmentationService,
        on_response: Callable[[int, Optional[DetectionResult], Optional[BaseException]], None],
        on_crash: Callable[[int, BaseException], None],
    ):
        self.index = index
        self.service = service
        self._on_response = on_response
        self._on_crash = on_crash

        self._inbox: "queue.Queue[Optional[_Request]]" = queue.Queue()
        self._thread = threading.Thread(
            target=self._run,
            name=f"humanblur-worker-{index}",
            daemon=True,
        )
        self.alive = False

    def start(self):
        self.alive = True
        self._thread.start()

    def post(self, request: _Request):
        self._inbox.put(request)

    def stop(self, timeout: float = 2.0):
        """Ask the thread to exit after its current request."""
        self.alive = False
        self._inbox.put(None)
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _run(self):
        while True:
            request = self._inbox.get()
            if request is None:
                break

            try:
                if request.kind == _INITIALIZE:
                    self.service.initialize()
                    result = None
                else:
                    result = self.service.detect_humans(request.frame)
            except BlurError as e:
                self._on_response(request.request_id, None, e)
                continue
            except Exception as e:
                self.alive = False
                self._on_crash(self.index, e)
                break

            self._on_response(request.request_id, result, None)

        self.service.dispose()


class WorkerPoolManager:
    """
    Round-robin pool of detection execution contexts.

    Pending requests live in one map guarded by a lock and are only
    touched on the dispatch and settle paths.
    """

    def __init__(
        self,
        settings: Optional[WorkerPoolSettings] = None,
        service_factory: Optional[ServiceFactory] = None,
        hardware_parallelism: Optional[int] = None,
    ):
        """
        Initialize the pool (no threads are started yet).

        Args:
            settings: Pool sizing and deadlines
            service_factory: Builds one SegmentationService per context
            hardware_parallelism: CPU count override; probed when None
        """
        self.settings = settings or WorkerPoolSettings()
        self._service_factory = service_factory or SegmentationService

        if hardware_parallelism is None:
            hardware_parallelism = probe_capabilities().cpu_count
        self.worker_count = max(1, min(
            self.settings.requested_workers,
            hardware_parallelism,
            self.settings.max_workers,
            4,
        ))

        self._contexts: List[ExecutionContext] = []
        self._next_index = 0
        self._pending: Dict[int, _Pending] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._is_initialized = False
        self._running = False
        self._sweeper: Optional[_DeadlineSweeper] = None

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def initialize(self) -> None:
        """
        Start every context and load its model.

        Raises:
            ModelLoadFailed: Any context failed; all contexts are torn down
        """
        if self._is_initialized:
            return

        sweeper = _DeadlineSweeper(self._handle_timeout)
        sweeper.start()
        with self._lock:
            self._sweeper = sweeper
            self._running = True

        try:
            for index in range(self.worker_count):
                context = ExecutionContext(
                    index,
                    self._service_factory(),
                    self._handle_response,
                    self._handle_crash,
                )
                context.start()
                self._contexts.append(context)

            futures = [
                self._dispatch(context, _INITIALIZE, None, self.settings.init_timeout_s)
                for context in self._contexts
            ]
            for future in futures:
                future.result()

        except Exception as e:
            self.dispose()
            raise ModelLoadFailed("Failed to initialize worker pool", cause=e) from e

        self._is_initialized = True
        logger.info(f"Worker pool initialized with {len(self._contexts)} contexts")

    def dispose(self) -> None:
        """Reject all pending requests, then stop every context. Idempotent."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            contexts = self._contexts
            self._contexts = []
            was_initialized = self._is_initialized
            self._is_initialized = False
            self._running = False
            sweeper = self._sweeper
            self._sweeper = None

        if sweeper is not None:
            sweeper.stop()

        for entry in pending:
            self._reject(entry.future, PoolDisposedError("Worker pool disposed"))

        for context in contexts:
            context.stop()

        self._next_index = 0
        if was_initialized or contexts:
            logger.info(f"Worker pool disposed ({len(pending)} pending requests rejected)")

    # ============================================================
    # DETECTION
    # ============================================================

    def submit(self, frame: Frame) -> Future:
        """
        Queue a detection on the next live context.

        Returns:
            Future resolving to a DetectionResult

        Raises:
            DetectionFailed: Pool not initialized
            QueueFullError: Too many outstanding requests
            WorkerCrashedError: No live context left
        """
        if not self._is_initialized:
            raise DetectionFailed("Worker pool not initialized")

        with self._lock:
            outstanding = sum(1 for p in self._pending.values() if p.kind == _DETECT)
            if outstanding >= self.settings.max_queue_size:
                raise QueueFullError("Detection queue full - processing overloaded")

            context = self._next_context()

        return self._dispatch(context, _DETECT, frame, self.settings.request_timeout_s)

    def detect_humans(self, frame: Frame) -> DetectionResult:
        """Submit a detection and wait for it to settle."""
        future = self.submit(frame)
        try:
            return future.result(timeout=self.settings.request_timeout_s * 2)
        except FutureTimeoutError as e:
            raise WorkerTimeoutError("Detection request timed out") from e

    def status(self) -> WorkerPoolStatus:
        with self._lock:
            pending = len(self._pending)
            live = sum(1 for c in self._contexts if c.alive)
            return WorkerPoolStatus(
                initialized=self._is_initialized,
                worker_count=len(self._contexts),
                live_workers=live,
                pending_requests=pending,
                queue_utilization=pending / self.settings.max_queue_size,
            )

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    # ============================================================
    # DISPATCH / SETTLE
    # ============================================================

    def _next_context(self) -> ExecutionContext:
        """Round-robin over live contexts. Caller holds the lock."""
        count = len(self._contexts)
        for _ in range(count):
            context = self._contexts[self._next_index]
            self._next_index = (self._next_index + 1) % count
            if context.alive:
                return context
        raise WorkerCrashedError("No live worker contexts available")

    def _dispatch(
        self,
        context: ExecutionContext,
        kind: str,
        frame: Optional[Frame],
        timeout_s: float,
    ) -> Future:
        request_id = next(self._ids)
        future: Future = Future()
        future.set_running_or_notify_cancel()

        with self._lock:
            # dispose() may have run since the caller picked this context
            if not self._running:
                self._reject(future, PoolDisposedError("Worker pool disposed"))
                return future
            self._pending[request_id] = _Pending(future, context.index, kind)
            self._sweeper.schedule(request_id, timeout_s)

        context.post(_Request(request_id, kind, frame))
        return future

    def _take(self, request_id: int) -> Optional[_Pending]:
        with self._lock:
            return self._pending.pop(request_id, None)

    def _handle_response(
        self,
        request_id: int,
        result: Optional[DetectionResult],
        error: Optional[BaseException],
    ):
        entry = self._take(request_id)
        if entry is None:
            logger.debug(f"Response for unknown or settled request {request_id}")
            return

        if error is not None:
            self._reject(entry.future, error)
        elif not entry.future.done():
            entry.future.set_result(result)

    def _handle_timeout(self, request_id: int):
        entry = self._take(request_id)
        if entry is None:
            return

        if entry.kind == _INITIALIZE:
            error = WorkerTimeoutError("Worker initialization timed out")
        else:
            error = WorkerTimeoutError("Detection request timed out")
        logger.warning(f"{error} (context {entry.context_index})")
        self._reject(entry.future, error)

    def _handle_crash(self, context_index: int, error: BaseException):
        logger.error(f"Worker context {context_index} crashed: {error}")

        with self._lock:
            doomed = [
                (request_id, entry) for request_id, entry in self._pending.items()
                if entry.context_index == context_index
            ]
            for request_id, _ in doomed:
                del self._pending[request_id]

        for _, entry in doomed:
            self._reject(
                entry.future,
                WorkerCrashedError("Worker encountered an error", cause=error),
            )

    @staticmethod
    def _reject(future: Future, error: BaseException):
        if not future.done():
            future.set_exception(error)
