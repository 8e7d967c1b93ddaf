"""Tests for the rate limit introspection, health and metrics routes."""

from fastapi import Request
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from admission.adapters.rate_limit.in_memory import InMemoryCounterStore
from admission.core.app_factory import create_app
from admission.core.config import RateLimitSettings, Settings
from admission.core.rate_limit import with_admission_control
from admission.core.telemetry import PrometheusEventSink


def _client(**kwargs) -> TestClient:
    kwargs.setdefault("store", InMemoryCounterStore())
    return TestClient(create_app(configure_logs=False, **kwargs))


def test_health_reports_store_backend():
    with _client() as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "store_backend": "memory"}


def test_status_for_fresh_caller():
    with _client() as client:
        response = client.get("/v1/rate-limit/status/booking")

    assert response.status_code == 200
    body = response.json()
    assert body["policy"] == "booking"
    assert body["limit"] == 20
    assert body["remaining"] == 20
    assert body["resetTime"].endswith("Z")
    assert body["retryAfter"] is None


def test_status_does_not_consume_quota():
    app = create_app(
        Settings(rate_limit=RateLimitSettings(policy_overrides={"api": {"max_requests": 3}})),
        store=InMemoryCounterStore(),
        configure_logs=False,
    )

    @app.get("/items")
    @with_admission_control("api")
    async def items(request: Request):
        return {"items": []}

    with TestClient(app) as client:
        client.get("/items")
        remaining = [
            client.get("/v1/rate-limit/status/api").json()["remaining"] for _ in range(5)
        ]

    assert remaining == [2, 2, 2, 2, 2]


def test_status_unknown_policy_is_404():
    with _client() as client:
        response = client.get("/v1/rate-limit/status/uploads")

    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "unknown_rate_limit_policy"
    assert "api" in error["details"]["hint"]


def test_list_policies():
    with _client() as client:
        response = client.get("/v1/rate-limit/policies")

    assert response.status_code == 200
    policies = {p["name"]: p for p in response.json()["policies"]}
    assert set(policies) == {"api", "auth", "register", "email", "booking", "passwordReset"}
    assert policies["auth"]["max_requests"] == 5
    assert policies["auth"]["window_seconds"] == 900


def test_metrics_disabled_by_default():
    with _client() as client:
        assert client.get("/metrics").status_code == 404


def test_metrics_exposes_admission_counters():
    sink = PrometheusEventSink(registry=CollectorRegistry())
    app = create_app(
        Settings(rate_limit=RateLimitSettings(policy_overrides={"register": {"max_requests": 1}})),
        store=InMemoryCounterStore(),
        sink=sink,
        configure_logs=False,
    )

    @app.post("/register")
    @with_admission_control("register")
    async def register(request: Request):
        return {"created": True}

    with TestClient(app) as client:
        assert client.post("/register").status_code == 200
        assert client.post("/register").status_code == 429
        response = client.get("/metrics")

    assert response.status_code == 200
    text = response.text
    assert 'admission_events_total{event="rate_limit.allowed",policy="register"} 1.0' in text
    assert 'admission_events_total{event="rate_limit.denied",policy="register"} 1.0' in text
