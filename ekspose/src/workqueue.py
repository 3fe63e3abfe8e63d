from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from ekspose.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one failure for the item, so
    consecutive failures produce non-decreasing delays.  :meth:`forget`
    resets the item back to ``base_delay``.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        # 2**64 * any sane base is far past any ceiling; skip the float overflow.
        if exponent >= 64:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by all items.

    Limits the aggregate retry rate to ``qps`` with bursts of up to ``burst``
    items, independent of which keys are failing.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    """Per-item exponential backoff combined with an overall token bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class RateLimitingQueue:
    """Deduplicating, delaying, rate-limited work queue.

    Items move through three sets:

    ``_dirty``
        Items that need processing.  Adding an item that is already dirty is
        a no-op, so repeated adds before :meth:`get` collapse into one.
    ``_processing``
        Items handed out by :meth:`get` and not yet passed to :meth:`done`.
        An item re-added while processing stays dirty but is only put back on
        the queue by :meth:`done`, so one key never runs on two workers.
    ``_queue``
        FIFO of items that are dirty and not processing.

    Delayed adds (:meth:`add_after`, :meth:`add_rate_limited`) wait in a heap
    serviced by a background thread.  :meth:`shut_down` drops delayed items,
    rejects new adds and wakes every blocked :meth:`get`; items already queued
    are still handed out until the queue is drained.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "ekspose",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = (
            rate_limiter if rate_limiter is not None else default_controller_rate_limiter()
        )
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._added_at: dict[Hashable, float] = {}
        self._started_at: dict[Hashable, float] = {}
        self._shutting_down = False

        self._waiting_cond = threading.Condition()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_ready_at: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._delay_thread = threading.Thread(
            target=self._waiting_loop, name=f"{name}-delay", daemon=True
        )
        self._delay_thread.start()
        METRICS.queue_depth.labels(name=self.name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            METRICS.queue_adds_total.labels(name=self.name).inc()
            self._dirty.add(item)
            if item in self._processing:
                return
            self._enqueue(item)

    def _enqueue(self, item: Hashable) -> None:
        self._queue.append(item)
        self._added_at.setdefault(item, self._clock())
        METRICS.queue_depth.labels(name=self.name).set(len(self._queue))
        self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until an item is available.

        Returns ``(item, False)``, or ``(None, True)`` once the queue is shut
        down and has no queued items left.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            now = self._clock()
            added_at = self._added_at.pop(item, None)
            if added_at is not None:
                METRICS.queue_latency_seconds.labels(name=self.name).observe(now - added_at)
            self._started_at[item] = now
            METRICS.queue_depth.labels(name=self.name).set(len(self._queue))
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            started_at = self._started_at.pop(item, None)
            if started_at is not None:
                METRICS.work_duration_seconds.labels(name=self.name).observe(
                    self._clock() - started_at
                )
            if item in self._dirty:
                self._enqueue(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._waiting_cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add *item* once *delay* seconds have passed.

        If the item is already waiting, the earlier of the two ready times
        wins.
        """
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return

        ready_at = self._clock() + delay
        with self._waiting_cond:
            existing = self._waiting_ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._waiting_cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        METRICS.queue_retries_total.labels(name=self.name).inc()
        LOGGER.debug("Requeueing %s in %.3fs", item, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def _pop_ready(self, now: float) -> list[Hashable]:
        ready: list[Hashable] = []
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            # Stale heap entry superseded by an earlier add_after.
            if self._waiting_ready_at.get(item) != ready_at:
                continue
            del self._waiting_ready_at[item]
            ready.append(item)
        return ready

    def _waiting_loop(self) -> None:
        while True:
            with self._waiting_cond:
                if self.shutting_down():
                    return
                ready = self._pop_ready(self._clock())
                if not ready:
                    timeout = (
                        max(0.0, self._waiting[0][0] - self._clock()) if self._waiting else None
                    )
                    self._waiting_cond.wait(timeout=timeout)
                    continue
            for item in ready:
                self.add(item)
