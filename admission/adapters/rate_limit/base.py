"""Counter store interface.

The limiter depends on this abstraction (not a concrete backend) so the
in-memory store can be swapped for a shared one (e.g., Redis) without
touching the admission layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class CounterEntry:
    """Request count for one key inside one fixed window.

    Attributes:
        count: Requests counted in the window (>= 1 once created).
        reset_time: UNIX epoch seconds at which the window ends. Set when the
            window opens and never moved while the entry is live.
    """

    count: int
    reset_time: float

    def is_expired(self, now: float) -> bool:
        return now > self.reset_time


class CounterStore(ABC):
    """Key -> CounterEntry storage with a read-modify-write contract.

    ``get`` never raises for a missing key; absence means a fresh window.
    ``set`` is an unconditional last-writer-wins overwrite. Backends signal
    infrastructure failures with ``StoreUnavailableError``.
    """

    @abstractmethod
    async def get(self, key: str) -> CounterEntry | None:
        """Return a copy of the live entry for key, or None."""
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, entry: CounterEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def cleanup(self) -> int:
        """Remove entries whose window has ended.

        Returns:
            Number of entries removed.
        """
        raise NotImplementedError

    async def increment(self, key: str, *, window_seconds: float, now: float) -> CounterEntry:
        """Count one request for key in the current fixed window.

        Opens a new window (count=1, reset_time=now+window) when no live
        entry exists, otherwise increments the existing count.

        This default is a plain get-then-set and is not atomic: two
        concurrent callers awaiting a remote backend between the two calls
        can both read the same count and undercount by one. Out-of-process
        backends must override it with an atomic primitive.

        Args:
            key: Namespaced counter key.
            window_seconds: Window length used when a new window opens.
            now: Current UNIX time in seconds.

        Returns:
            The entry after counting this request.
        """
        entry = await self.get(key)
        if entry is None or entry.is_expired(now):
            entry = CounterEntry(count=1, reset_time=now + window_seconds)
        else:
            entry = CounterEntry(count=entry.count + 1, reset_time=entry.reset_time)
        await self.set(key, entry)
        return entry

    async def start(self) -> None:
        """Acquire resources / start background work. No-op by default."""

    async def close(self) -> None:
        """Release resources / stop background work. No-op by default."""
