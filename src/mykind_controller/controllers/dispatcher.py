"""
Work queue and worker pool driving the reconciler.

The queue hands each key to at most one worker at a time, coalesces
duplicate deliveries, and re-adds failed keys after an exponential
backoff. All retry behaviour lives here; a reconcile pass itself is a
single-shot computation.
"""

import asyncio
import heapq
import itertools
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

import structlog
from prometheus_client import Counter, Gauge

from ..models.mykind import ObjectKey, ReconcileResult, RetryConfiguration

QUEUE_DEPTH = Gauge(
    "mykind_workqueue_depth",
    "Keys waiting to be reconciled"
)
QUEUE_RETRIES = Counter(
    "mykind_workqueue_retries_total",
    "Keys re-added to the work queue after a failed pass"
)
RETRIES_EXHAUSTED = Counter(
    "mykind_reconcile_retries_exhausted_total",
    "Keys dropped after exhausting their retry budget"
)

Clock = Callable[[], float]


class ExponentialBackoff:
    """
    Per-key exponential backoff.

    The n-th consecutive failure of a key waits
    ``min(base_delay * 2**n, max_delay)`` seconds, counting from zero.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("Require 0 < base_delay <= max_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[ObjectKey, int] = {}

    def when(self, key: ObjectKey) -> float:
        """Record a failure for ``key`` and return the delay before its retry."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        # Exponent capped to keep the float finite.
        return min(self.base_delay * (2 ** min(failures, 62)), self.max_delay)

    def retries(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: ObjectKey) -> None:
        self._failures.pop(key, None)


class ShutDown(Exception):
    """Raised by ``RateLimitingQueue.get`` once the queue is shut down."""
    pass


class RateLimitingQueue:
    """
    Key queue with per-key exclusivity, coalescing and delayed adds.

    A key is in at most one of these states: waiting in the queue,
    being processed, or both "processing and dirty" (re-added while a
    worker holds it, queued again on ``done``).
    """

    def __init__(self,
                 backoff: Optional[ExponentialBackoff] = None,
                 clock: Clock = time.monotonic) -> None:
        self.backoff = backoff or ExponentialBackoff()
        self.clock = clock

        self._queue: Deque[ObjectKey] = deque()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._waiting: List[Tuple[float, int, ObjectKey]] = []
        self._sequence = itertools.count()
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def add(self, key: ObjectKey) -> None:
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            return

        self._queue.append(key)
        QUEUE_DEPTH.set(len(self._queue))
        self._wakeup.set()

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """Add ``key`` once ``delay`` seconds have passed on the queue clock."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        heapq.heappush(self._waiting, (self.clock() + delay, next(self._sequence), key))
        self._wakeup.set()

    def add_rate_limited(self, key: ObjectKey) -> float:
        """Re-add a failed key after its backoff delay; returns the delay."""
        delay = self.backoff.when(key)
        QUEUE_RETRIES.inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: ObjectKey) -> None:
        self.backoff.forget(key)

    def retries(self, key: ObjectKey) -> int:
        return self.backoff.retries(key)

    def promote_due(self) -> int:
        """Move delayed keys whose time has come into the queue."""
        now = self.clock()
        promoted = 0
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self.add(key)
            promoted += 1
        return promoted

    def next_due_in(self) -> Optional[float]:
        if not self._waiting:
            return None
        return max(0.0, self._waiting[0][0] - self.clock())

    def get_nowait(self) -> Optional[ObjectKey]:
        """Hand out the next ready key, or None when nothing is ready."""
        self.promote_due()
        if not self._queue:
            return None

        key = self._queue.popleft()
        QUEUE_DEPTH.set(len(self._queue))
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    async def get(self) -> ObjectKey:
        """
        Wait for the next key to process.

        Raises:
            ShutDown: If the queue has been shut down
        """
        while True:
            if self._shutting_down:
                raise ShutDown()

            key = self.get_nowait()
            if key is not None:
                return key

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.next_due_in())
            except asyncio.TimeoutError:
                pass

    def done(self, key: ObjectKey) -> None:
        """Mark ``key`` as processed; re-queue it if it was re-added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            QUEUE_DEPTH.set(len(self._queue))
            self._wakeup.set()

    def is_processing(self, key: ObjectKey) -> bool:
        return key in self._processing

    def shut_down(self) -> None:
        self._shutting_down = True
        self._wakeup.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        return len(self._queue)


ReconcileFunc = Callable[[ObjectKey], Awaitable[ReconcileResult]]


class Dispatcher:
    """
    Worker pool pulling keys from a ``RateLimitingQueue``.

    Each worker runs one reconcile pass at a time. Failures are logged
    and retried with backoff until ``max_retries`` consecutive failures,
    after which the key is dropped until its next event or resync.
    """

    def __init__(self,
                 queue: RateLimitingQueue,
                 reconcile: ReconcileFunc,
                 workers: int = 1,
                 max_retries: int = 15,
                 logger: Any = None) -> None:
        self.queue = queue
        self.reconcile = reconcile
        self.workers = workers
        self.max_retries = max_retries
        self.logger = (logger or structlog.get_logger()).bind(component="dispatcher")
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_config(cls,
                    reconcile: ReconcileFunc,
                    retry: RetryConfiguration,
                    workers: int,
                    logger: Any = None,
                    clock: Clock = time.monotonic) -> "Dispatcher":
        queue = RateLimitingQueue(
            ExponentialBackoff(retry.base_delay, retry.max_delay),
            clock=clock,
        )
        return cls(queue, reconcile, workers=workers, max_retries=retry.max_retries, logger=logger)

    async def process(self, key: ObjectKey) -> Optional[ReconcileResult]:
        """Run one pass for a key already taken from the queue."""
        try:
            result = await self.reconcile(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_failure(key, e)
            return None
        finally:
            self.queue.done(key)

        self.queue.forget(key)
        if result.requeue:
            self.queue.add(key)
        return result

    def _handle_failure(self, key: ObjectKey, error: Exception) -> None:
        if self.queue.retries(key) >= self.max_retries:
            self.logger.error(
                "Dropping key after exhausting retries",
                mykind=str(key),
                retries=self.queue.retries(key),
                error=str(error),
            )
            RETRIES_EXHAUSTED.inc()
            self.queue.forget(key)
            return

        delay = self.queue.add_rate_limited(key)
        self.logger.warning(
            "Reconcile failed, requeueing with backoff",
            mykind=str(key),
            error_type=type(error).__name__,
            error=str(error),
            retry_in=round(delay, 3),
            retries=self.queue.retries(key),
        )

    async def process_next(self) -> Optional[ReconcileResult]:
        key = await self.queue.get()
        return await self.process(key)

    async def _worker(self, worker_id: int) -> None:
        log = self.logger.bind(worker=worker_id)
        log.debug("Worker started")
        while True:
            try:
                await self.process_next()
            except ShutDown:
                break
        log.debug("Worker stopped")

    def start(self) -> List[asyncio.Task]:
        if self._tasks:
            raise RuntimeError("Dispatcher is already running")

        self._tasks = [
            asyncio.create_task(self._worker(i)) for i in range(self.workers)
        ]
        self.logger.info("Dispatcher started", workers=self.workers)
        return list(self._tasks)

    async def stop(self) -> None:
        self.queue.shut_down()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Dispatcher stopped")
