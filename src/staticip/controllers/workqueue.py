"""
Owner-keyed work queue.

Semantics:
    - A key is queued at most once; adding a queued key is a no-op.
    - A key handed to a worker is "processing". Adding it again marks it
      dirty and it is re-queued when the worker calls done(), so one key is
      never processed by two workers at the same time.
    - add_after() schedules an add; add_rate_limited() does so with an
      exponential per-key delay until forget() resets the key.
    - shutdown() stops handing out keys; in-flight keys finish normally.
"""

import asyncio
from collections import deque
from collections.abc import Callable

from staticip.utils.logger import get_logger

logger = get_logger(__name__)


class WorkQueue:
    """Coalescing, rate-limited queue of string keys."""

    def __init__(self, name: str, backoff: Callable[[int], float]):
        """
        Args:
            name: Queue name for logging
            backoff: Delay in seconds for the n-th consecutive requeue of a key
        """
        self.name = name
        self._backoff = backoff

        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # =========================================================================
    # Producers
    # =========================================================================

    def add(self, key: str) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return
        self._queue.append(key)
        self._wakeup.set()

    def add_after(self, key: str, delay: float) -> None:
        """
        Queue a key after a delay.

        A pending timer for the same key is kept if it fires earlier.
        """
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
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def add_rate_limited(self, key: str) -> float:
        """
        Queue a key after its backoff delay.

        Returns:
            The delay used.
        """
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = self._backoff(failures)
        logger.debug(f"[{self.name}] requeue {key} in {delay:.2f}s (#{failures})")
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset a key's backoff."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    # =========================================================================
    # Consumers
    # =========================================================================

    async def get(self) -> str | None:
        """
        Wait for the next key.

        Returns:
            The key, or None once the queue is shutting down.
        """
        while True:
            if self._shutting_down:
                return None
            if self._queue:
                key = self._queue.popleft()
                self._dirty.discard(key)
                self._processing.add(key)
                return key
            self._wakeup.clear()
            await self._wakeup.wait()

    def done(self, key: str) -> None:
        """Mark a key finished; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wakeup.set()

    # =========================================================================
    # Shutdown
    # =========================================================================

    def shutdown(self) -> None:
        """Stop handing out keys and cancel scheduled adds."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._wakeup.set()

    def get_stats(self) -> dict:
        return {
            "queued": len(self._queue),
            "processing": len(self._processing),
            "scheduled": len(self._timers),
            "backing_off": len(self._failures),
        }
