"""Fixed-window rate limiter.

``RateLimiter`` pairs one immutable ``Policy`` with a ``CounterStore`` and
turns each request into an ``AdmissionDecision``.

Counting is fixed-window, not sliding: the window opens on the first request
for a key and lasts ``window_seconds``. A burst straddling the end of one
window and the start of the next can therefore admit up to
``2 x max_requests - 1`` requests in a span far shorter than the window.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import Request

from admission.adapters.rate_limit.base import CounterEntry, CounterStore
from admission.core.errors import StoreUnavailableError
from admission.core.key_strategies import (
    KeyStrategy,
    get_client_ip,
    get_user_agent,
    ip_key_strategy,
)
from admission.core.telemetry import EventSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MESSAGE = "Too many requests, please try again later."


@dataclass(frozen=True)
class Policy:
    """Immutable admission policy.

    Attributes:
        name: Registry name; also namespaces counter keys.
        window_seconds: Fixed window length.
        max_requests: Requests admitted per key per window.
        message: Text returned to rejected callers.
        key_strategy: Maps a request to its counter scope.
        skip_successful_requests: Do not count responses with status < 400.
        skip_failed_requests: Do not count responses with status >= 400.
        on_limit_reached: Optional ``(request, key)`` hook run on rejection.
    """

    name: str
    window_seconds: float
    max_requests: int
    message: str = DEFAULT_MESSAGE
    key_strategy: KeyStrategy = field(default_factory=ip_key_strategy, compare=False)
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False
    on_limit_reached: Callable[[Request, str], None] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name must be a non-empty string")
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

    @property
    def defers_increment(self) -> bool:
        """True when counting depends on the handler outcome."""
        return self.skip_successful_requests or self.skip_failed_requests

    def counts_outcome(self, status_code: int) -> bool:
        succeeded = status_code < 400
        if succeeded and self.skip_successful_requests:
            return False
        if not succeeded and self.skip_failed_requests:
            return False
        return True

    def with_overrides(self, **changes: Any) -> "Policy":
        return replace(self, **changes)


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of a single admission check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window.
        remaining: Requests left in the current window (0 when denied).
        reset_time: UNIX epoch seconds when the current window ends.
        retry_after: Whole seconds to wait before retrying, when denied.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    retry_after: int | None = None

    def reset_at_iso(self) -> str:
        """Window end as an ISO-8601 UTC timestamp with millisecond precision."""
        moment = datetime.fromtimestamp(self.reset_time, tz=timezone.utc)
        return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def settled(self, entry: CounterEntry | None) -> "AdmissionDecision":
        """Quota after a deferred count.

        ``entry`` is what ``RateLimiter.record`` returned: the counter after
        this request was counted, or None when its outcome was skipped and
        the slot reserved by ``peek`` was given back.
        """
        if entry is None:
            return replace(self, remaining=min(self.limit, self.remaining + 1))
        return replace(
            self,
            remaining=max(0, self.limit - entry.count),
            reset_time=entry.reset_time,
        )

    def rate_limit_headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at_iso(),
        }


class RateLimiter:
    """Applies one policy against a counter store."""

    def __init__(
        self,
        policy: Policy,
        store: CounterStore,
        *,
        sink: EventSink | None = None,
        clock: Callable[[], float] = time.time,
        store_timeout_seconds: float | None = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            policy: Admission policy to enforce.
            store: Counter store, possibly shared with other limiters.
            sink: Event sink for warnings and metrics.
            clock: Time source returning UNIX time in seconds.
            store_timeout_seconds: Upper bound for each store call; a timeout
                is reported as ``StoreUnavailableError``.
        """
        self._policy = policy
        self._store = store
        self._sink = sink or EventSink()
        self._clock = clock
        self._store_timeout = store_timeout_seconds

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"RateLimiter(policy={self._policy.name!r}, max={self._policy.max_requests}, "
            f"window_s={self._policy.window_seconds})"
        )

    @property
    def policy(self) -> Policy:
        return self._policy

    @property
    def sink(self) -> EventSink:
        return self._sink

    def key_for(self, request: Request) -> str:
        return f"{self._policy.name}:{self._policy.key_strategy(request)}"

    async def check_limit(self, request: Request) -> AdmissionDecision:
        """Count this request and decide whether it is admitted.

        Raises:
            StoreUnavailableError: If the store fails or times out.
            KeyDerivationError: If a custom key strategy cannot produce a key.
        """
        key = self.key_for(request)
        now = self._clock()
        entry = await self._store_call(
            "increment",
            key,
            self._store.increment(key, window_seconds=self._policy.window_seconds, now=now),
        )

        if entry.count <= self._policy.max_requests:
            self._sink.record_metric("rate_limit.allowed", 1, {"policy": self._policy.name})
            return AdmissionDecision(
                allowed=True,
                limit=self._policy.max_requests,
                remaining=self._policy.max_requests - entry.count,
                reset_time=entry.reset_time,
            )

        return self._deny(request, key, entry, now)

    async def peek(self, request: Request) -> AdmissionDecision:
        """Decide admission without counting (outcome-dependent policies).

        The request is denied once the live window already holds
        ``max_requests`` counted requests; ``record`` does the counting after
        the handler has produced a status code.
        """
        key = self.key_for(request)
        now = self._clock()
        entry = await self._store_call("get", key, self._store.get(key))

        if entry is None or entry.is_expired(now):
            return AdmissionDecision(
                allowed=True,
                limit=self._policy.max_requests,
                remaining=self._policy.max_requests - 1,
                reset_time=now + self._policy.window_seconds,
            )

        if entry.count >= self._policy.max_requests:
            return self._deny(request, key, entry, now)

        self._sink.record_metric("rate_limit.allowed", 1, {"policy": self._policy.name})
        return AdmissionDecision(
            allowed=True,
            limit=self._policy.max_requests,
            remaining=self._policy.max_requests - entry.count - 1,
            reset_time=entry.reset_time,
        )

    async def record(self, request: Request, status_code: int) -> CounterEntry | None:
        """Count a finished request unless its outcome class is skipped.

        Returns:
            The updated entry, or None when the outcome was not counted.
        """
        if not self._policy.counts_outcome(status_code):
            return None
        key = self.key_for(request)
        return await self._store_call(
            "increment",
            key,
            self._store.increment(
                key, window_seconds=self._policy.window_seconds, now=self._clock()
            ),
        )

    async def status(self, request: Request) -> AdmissionDecision:
        """Report the caller's current quota without consuming any of it."""
        key = self.key_for(request)
        now = self._clock()
        entry = await self._store_call("get", key, self._store.get(key))

        if entry is None or entry.is_expired(now):
            return AdmissionDecision(
                allowed=True,
                limit=self._policy.max_requests,
                remaining=self._policy.max_requests,
                reset_time=now + self._policy.window_seconds,
            )

        remaining = max(0, self._policy.max_requests - entry.count)
        return AdmissionDecision(
            allowed=remaining > 0,
            limit=self._policy.max_requests,
            remaining=remaining,
            reset_time=entry.reset_time,
            retry_after=None if remaining > 0 else _retry_after(entry.reset_time, now),
        )

    async def reset(self, request: Request) -> None:
        """Forget the caller's counter for this policy."""
        key = self.key_for(request)
        await self._store_call("delete", key, self._store.delete(key))

    def _deny(
        self, request: Request, key: str, entry: CounterEntry, now: float
    ) -> AdmissionDecision:
        retry_after = _retry_after(entry.reset_time, now)

        self._sink.log(
            "warning",
            "rate_limit.exceeded",
            {
                "policy": self._policy.name,
                "key": key,
                "count": entry.count,
                "limit": self._policy.max_requests,
                "ip": get_client_ip(request),
                "user_agent": get_user_agent(request),
                "retry_after_s": retry_after,
            },
        )
        self._sink.record_metric("rate_limit.denied", 1, {"policy": self._policy.name})

        if self._policy.on_limit_reached is not None:
            try:
                self._policy.on_limit_reached(request, key)
            except Exception:
                logger.exception(
                    "rate_limit.on_limit_reached_failed",
                    extra={"policy": self._policy.name},
                )

        return AdmissionDecision(
            allowed=False,
            limit=self._policy.max_requests,
            remaining=0,
            reset_time=entry.reset_time,
            retry_after=retry_after,
        )

    async def _store_call(self, operation: str, key: str, call: Awaitable[T]) -> T:
        if self._store_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._store_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(
                code="rate_limit_store_timeout",
                message=f"Counter store {operation} timed out",
                details={
                    "policy": self._policy.name,
                    "operation": operation,
                    "context": {"key": key, "timeout_s": self._store_timeout},
                },
            ) from exc


def _retry_after(reset_time: float, now: float) -> int:
    # Never advertise 0: the window is still live at reset_time itself.
    return max(1, math.ceil(reset_time - now))
