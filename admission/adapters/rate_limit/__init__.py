"""Counter store adapters.

This package keeps the limiter independent of where counters live: start with
the in-memory store and move to Redis for multi-worker deployments without
changing the admission layer.
"""

from admission.adapters.rate_limit.base import CounterEntry, CounterStore
from admission.adapters.rate_limit.factory import create_counter_store
from admission.adapters.rate_limit.in_memory import InMemoryCounterStore
from admission.adapters.rate_limit.redis_store import RedisCounterStore

__all__ = [
    "CounterEntry",
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
