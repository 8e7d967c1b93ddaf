"""In-memory counter store with a periodic cleanup task.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: a lock guards the dict so the sweep never races with
  concurrent gets/sets (including callers in a threadpool).
- On a single event loop the get/set pair of ``increment`` runs without an
  intervening await on I/O, so same-key increments do not interleave.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable

from admission.adapters.rate_limit.base import CounterEntry, CounterStore

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60


class InMemoryCounterStore(CounterStore):
    """Dict-backed counter store.

    Expired entries are dropped lazily on ``get`` and eagerly by the
    background sweep started with ``start()``.
    """

    def __init__(
        self,
        *,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store.

        Args:
            cleanup_interval_seconds: Delay between background sweeps.
            clock: Time source returning UNIX time in seconds.

        Raises:
            ValueError: If the cleanup interval is not positive.
        """
        if cleanup_interval_seconds <= 0:
            raise ValueError("cleanup_interval_seconds must be > 0")

        self._cleanup_interval = cleanup_interval_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, CounterEntry] = {}
        self._cleanup_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def get(self, key: str) -> CounterEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return CounterEntry(count=entry.count, reset_time=entry.reset_time)

    async def set(self, key: str, entry: CounterEntry) -> None:
        with self._lock:
            self._entries[key] = CounterEntry(count=entry.count, reset_time=entry.reset_time)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def increment(self, key: str, *, window_seconds: float, now: float) -> CounterEntry:
        # Same semantics as the base class, done under the lock so threadpool
        # callers sharing this store cannot interleave.
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(now):
                entry = CounterEntry(count=1, reset_time=now + window_seconds)
            else:
                entry = CounterEntry(count=entry.count + 1, reset_time=entry.reset_time)
            self._entries[key] = entry
            return CounterEntry(count=entry.count, reset_time=entry.reset_time)

    async def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            remaining = len(self._entries)

        if expired:
            logger.debug(
                "rate_limit.cleanup",
                extra={"removed": len(expired), "remaining": remaining},
            )
        return len(expired)

    async def start(self) -> None:
        """Start the background cleanup loop (idempotent)."""
        if self.running:
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "rate_limit.cleanup_started",
            extra={"interval_s": self._cleanup_interval},
        )

    async def close(self) -> None:
        """Stop the cleanup loop and drop all counters."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("rate_limit.cleanup_stopped")

        with self._lock:
            self._entries.clear()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.cleanup()
            except Exception:
                logger.exception("rate_limit.cleanup_failed")
