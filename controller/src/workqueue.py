from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one more consecutive failure for the
    item.  :meth:`forget` resets the count once the item is processed
    successfully.
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

        # 2**63 * base_delay is far past any sane cap; stop before float overflow.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Overall token bucket shared by all items.

    Bounds the aggregate retry rate regardless of how many distinct keys are
    failing.  Tokens may go negative: each reservation beyond the burst is
    pushed further into the future.
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
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, item: Hashable) -> int:
        return 0

    def forget(self, item: Hashable) -> None:
        return None


class MaxOfRateLimiter:
    """Combine limiters, returning the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
) -> MaxOfRateLimiter:
    """Per-item exponential backoff combined with an overall 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class WorkQueue:
    """Thread-safe FIFO that never holds or hands out the same item twice at once.

    Bookkeeping:
        ``_queue``
            Items ready to be handed out, in order.
        ``_dirty``
            Items that need processing.  Every queued item is dirty; an item
            re-added while being processed is dirty but not queued.
        ``_processing``
            Items returned by :meth:`get` whose :meth:`done` has not been
            called yet.  A dirty item is only queued again on ``done``, which
            is what keeps two workers from syncing the same key concurrently.
    """

    def __init__(self, name: str = "workqueue") -> None:
        self.name = name
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        self._cond = threading.Condition()

    def _update_depth(self) -> None:
        METRICS.workqueue_depth.labels(name=self.name).set(len(self._queue))

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return

            self._dirty.add(item)
            METRICS.workqueue_adds_total.labels(name=self.name).inc()
            if item in self._processing:
                return

            self._queue.append(item)
            self._update_depth()
            self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until an item is available.

        Returns ``(item, False)`` normally and ``(None, True)`` once the queue
        has been shut down and every queued item has been handed out.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._update_depth()
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class DelayingQueue(WorkQueue):
    """Work queue that can hold items back for a while before adding them.

    Delayed items wait in a heap ordered by ready time, served by a single
    daemon thread.  A second delayed add for an item that is already waiting
    only takes effect if it would make the item ready sooner.
    """

    def __init__(self, name: str = "workqueue") -> None:
        super().__init__(name)
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._waiting_cond = threading.Condition()
        self._waiting_stopped = False
        self._waiter = threading.Thread(
            target=self._waiting_loop,
            name=f"{name}-delay",
            daemon=True,
        )
        self._waiter.start()

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        if self.shutting_down():
            return
        if delay_seconds <= 0:
            self.add(item)
            return

        ready_at = time.monotonic() + delay_seconds
        with self._waiting_cond:
            existing = self._ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._waiting_cond.notify()

    def _waiting_loop(self) -> None:
        with self._waiting_cond:
            while not self._waiting_stopped:
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    # Entries superseded by an earlier ready time are skipped.
                    if self._ready_at.get(item) != ready_at:
                        continue
                    del self._ready_at[item]
                    self.add(item)

                timeout = self._waiting[0][0] - now if self._waiting else None
                self._waiting_cond.wait(timeout=timeout)

    def shut_down(self) -> None:
        super().shut_down()
        with self._waiting_cond:
            self._waiting_stopped = True
            self._waiting.clear()
            self._ready_at.clear()
            self._waiting_cond.notify_all()


class RateLimitingQueue(DelayingQueue):
    """Delaying queue whose re-adds are spaced out by a :class:`RateLimiter`."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "workqueue",
    ) -> None:
        super().__init__(name)
        self.rate_limiter = (
            rate_limiter if rate_limiter is not None else default_controller_rate_limiter()
        )

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        METRICS.workqueue_retries_total.labels(name=self.name).inc()
        LOGGER.debug("Requeuing %r in %.3fs", item, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
