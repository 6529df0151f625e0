#!/usr/bin/env python3
# src/workqueue.py
"""
In-memory rate limited work queue.

Keys are de-duplicated and never handed to two workers at once: a key added
while it is being processed is parked and queued again once the worker
calls done(). Failed keys come back with jittered exponential backoff.
"""

import heapq
import itertools
import logging
import os
import random
import threading
import time
from collections import deque
from typing import Callable, Dict, Hashable, List, Optional, Set, Tuple

from prometheus_client import Gauge

logger = logging.getLogger("cassandra-operator.workqueue")

BACKOFF_BASE_DELAY = float(os.environ.get("BACKOFF_BASE_DELAY", "0.5"))
BACKOFF_MAX_DELAY = float(os.environ.get("BACKOFF_MAX_DELAY", "300"))

workqueue_depth = Gauge(
    "cassandra_operator_workqueue_depth", "Number of keys waiting to be reconciled"
)


def calculate_jittered_sleep(base_interval: float, max_jitter_percent: float = 0.2) -> float:
    """Spread periodic wake-ups of resync loops by +/- ``max_jitter_percent``.

    Never returns less than one second.
    """
    spread = base_interval * max_jitter_percent
    return max(1.0, random.uniform(base_interval - spread, base_interval + spread))


def calculate_exponential_backoff(
    attempt: int, base_delay: float = BACKOFF_BASE_DELAY, max_delay: float = BACKOFF_MAX_DELAY
) -> float:
    """Delay before retrying a key that failed ``attempt`` times already.

    Doubles per attempt up to ``max_delay``, then adds 10-30% on top so
    datacenters that failed together do not retry in lockstep.
    """
    capped = min(base_delay * (2 ** attempt), max_delay)
    return capped * (1 + random.uniform(0.1, 0.3))


class WorkQueue:
    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        backoff: Callable[[int], float] = calculate_exponential_backoff,
    ):
        self._clock = clock
        self._backoff = backoff
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._queued: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._dirty: Set[Hashable] = set()
        self._delayed: List[Tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._failures: Dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _add_locked(self, key: Hashable):
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queue.append(key)
        self._queued.add(key)
        workqueue_depth.set(len(self._queue))
        self._cond.notify()

    def _promote_due_locked(self):
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)

    def add(self, key: Hashable):
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float):
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        with self._cond:
            attempt = self._failures.get(key, 0)
            self._failures[key] = attempt + 1
        delay = self._backoff(attempt)
        logger.debug(f"Requeue {key} after {delay:.2f}s (attempt {attempt + 1})")
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable):
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Block until a key is ready, the timeout expires or the queue shuts down."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    workqueue_depth.set(len(self._queue))
                    return key
                if self._shutting_down:
                    return None

                now = self._clock()
                waits = []
                if deadline is not None:
                    if now >= deadline:
                        return None
                    waits.append(deadline - now)
                if self._delayed:
                    waits.append(max(0.0, self._delayed[0][0] - now))
                self._cond.wait(min(waits) if waits else None)

    def try_claim(self, key: Hashable) -> bool:
        """Mark ``key`` as processing right away unless a worker already holds it."""
        with self._cond:
            if key in self._processing:
                self._dirty.add(key)
                return False
            if key in self._queued:
                self._queue.remove(key)
                self._queued.discard(key)
                workqueue_depth.set(len(self._queue))
            self._processing.add(key)
            return True

    def is_processing(self, key: Hashable) -> bool:
        with self._cond:
            return key in self._processing

    def done(self, key: Hashable):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._add_locked(key)

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
