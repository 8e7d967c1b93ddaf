"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any import of ``admission.core.config`` so
the global settings object never reads a developer's .env file.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"

os.environ.setdefault("APP_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("RATE_LIMIT_STORE_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_METRICS_BACKEND", "none")
os.environ.setdefault("LOG_LEVEL", "INFO")

from typing import Callable

import pytest
from fastapi import Request

from admission.adapters.rate_limit.in_memory import InMemoryCounterStore


class FakeClock:
    """Deterministic clock returning UNIX seconds."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def make_request() -> Callable[..., Request]:
    """Build a bare Starlette request for unit tests (no app attached)."""

    def _make(
        headers: dict[str, str] | None = None,
        *,
        client: tuple[str, int] | None = ("10.0.0.1", 51000),
        path: str = "/v1/test",
        method: str = "GET",
    ) -> Request:
        scope = {
            "type": "http",
            "method": method,
            "scheme": "http",
            "server": ("testserver", 80),
            "path": path,
            "root_path": "",
            "query_string": b"",
            "headers": [
                (name.lower().encode("latin-1"), value.encode("latin-1"))
                for name, value in (headers or {}).items()
            ],
            "client": client,
        }
        return Request(scope)

    return _make
