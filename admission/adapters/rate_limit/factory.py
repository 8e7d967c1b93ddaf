"""Factory for counter store instances."""

from admission.adapters.rate_limit.base import CounterStore
from admission.adapters.rate_limit.in_memory import InMemoryCounterStore
from admission.adapters.rate_limit.redis_store import RedisCounterStore
from admission.core.config import RateLimitSettings
from admission.core.errors import ValidationAppError


def create_counter_store(rate_limit_settings: RateLimitSettings) -> CounterStore:
    """Instantiate the counter store selected by configuration.

    Args:
        rate_limit_settings: Resolved ``RATE_LIMIT_*`` settings.

    Returns:
        CounterStore: Unstarted store; the caller owns start()/close().

    Raises:
        ValidationAppError: If the backend name is unknown.
    """
    backend = rate_limit_settings.store_backend

    if backend == "memory":
        return InMemoryCounterStore(
            cleanup_interval_seconds=rate_limit_settings.cleanup_interval_seconds,
        )

    if backend == "redis":
        return RedisCounterStore(
            url=rate_limit_settings.redis_url,
            key_prefix=rate_limit_settings.key_prefix,
        )

    raise ValidationAppError(
        code="rate_limit_unknown_store_backend",
        message=(
            f"Unknown counter store backend: '{backend}'. Supported backends: memory, redis"
        ),
    )
