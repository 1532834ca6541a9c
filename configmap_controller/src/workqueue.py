"""Rate-limited, deduplicating work queue for reconcile keys.

Follows the client-go workqueue contract: a key is held at most once in
the queue, a key being processed is never handed to a second worker, and
a key re-added while processing is delivered again after ``done``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Hashable

from configmap_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ItemExponentialBackoff:
    """Per-key exponential delay: ``base * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        # Guard against float overflow for keys that keep failing.
        if failures > 60:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**failures))

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class RateLimitingQueue:
    def __init__(self, rate_limiter: ItemExponentialBackoff | None = None) -> None:
        self.rate_limiter = rate_limiter or ItemExponentialBackoff()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._timers: dict[Hashable, threading.Timer] = {}
        self._cond = threading.Condition()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            METRICS.workqueue_adds_total.inc()
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            METRICS.workqueue_depth.set(len(self._queue))
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until an item is available.

        Returns ``(item, shutdown)``; ``item`` is None when the queue is shut
        down or ``timeout`` elapsed.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout)
            if not self._queue:
                return None, self._shutting_down
            item = self._queue.popleft()
            METRICS.workqueue_depth.set(len(self._queue))
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.workqueue_depth.set(len(self._queue))
                self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            existing = self._timers.get(item)
            if existing is not None and existing.is_alive():
                # Keep the earlier deadline.
                return
            timer = threading.Timer(delay, self._fire, args=(item,))
            timer.daemon = True
            self._timers[item] = timer
        timer.start()

    def _fire(self, item: Hashable) -> None:
        with self._cond:
            self._timers.pop(item, None)
        self.add(item)

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        METRICS.workqueue_retries_total.inc()
        LOGGER.debug("Requeueing %s in %.3fs", item, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers.values())
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()
