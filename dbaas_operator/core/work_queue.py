"""
In-process work queue keyed by object identity.

Features:
- At most one pending item per key (repeated adds collapse)
- At most one in-flight item per key (a key re-added while it is being
  processed is parked until ``done`` is called)
- Delayed adds and per-key exponential backoff for retries

Usage:
    >>> queue = WorkQueue(base_delay=1.0, max_delay=300.0)
    >>> queue.add("default/my-db")
    >>> key = await queue.get()
    >>> try:
    ...     await reconcile(key)
    ...     queue.forget(key)
    ... except Exception:
    ...     queue.add_rate_limited(key)
    ... finally:
    ...     queue.done(key)
"""
import asyncio
from collections import deque
from typing import Deque, Dict, Set

import structlog

logger = structlog.get_logger(__name__)


class QueueShutDown(Exception):
    """Raised by ``get`` once the queue has been shut down."""


class WorkQueue:
    """Deduplicating asyncio work queue with delayed and rate-limited adds."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 300.0):
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._shutting_down = False
        self._has_items = asyncio.Event()

    def __len__(self) -> int:
        return len(self._queue)

    def add(self, key: str) -> None:
        """Mark ``key`` as needing work. Collapses with any pending add."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return
        self._queue.append(key)
        self._notify()

    def add_after(self, key: str, delay: float) -> None:
        """Add ``key`` after ``delay`` seconds. An earlier pending timer wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    def _fire_timer(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def backoff_delay(self, key: str) -> float:
        failures = self._failures.get(key, 0)
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def add_rate_limited(self, key: str) -> float:
        """Add ``key`` after its exponential backoff delay. Returns the delay used."""
        delay = self.backoff_delay(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        """Reset the backoff history of ``key``."""
        self._failures.pop(key, None)

    async def get(self) -> str:
        """
        Wait for the next key and mark it as processing.

        Raises:
            QueueShutDown: once ``shutdown`` was called and nothing is left
        """
        while not self._queue:
            if self._shutting_down:
                raise QueueShutDown()
            self._has_items.clear()
            await self._has_items.wait()
        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str) -> None:
        """Mark ``key`` as finished; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._notify()

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def shutdown(self) -> None:
        """Stop accepting work and wake every waiting ``get``."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.clear()
        self._dirty.clear()
        self._notify()
        logger.info("work_queue_shut_down")

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _notify(self) -> None:
        self._has_items.set()
