"""Application factory for the admission control service.

Builds the counter store, policy registry and event sink once and hangs them
on ``app.state``; handlers reach them through the request instead of module
globals. The store's background cleanup runs for the lifetime of the app.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from admission.adapters.rate_limit.base import CounterStore
from admission.adapters.rate_limit.factory import create_counter_store
from admission.api.routes import health_router, metrics_router, rate_limit_router
from admission.core.config import Settings, settings as default_settings
from admission.core.exception_handlers import setup_exception_handlers
from admission.core.key_strategies import ip_key_strategy, user_key_strategy
from admission.core.logging import configure_logging
from admission.core.middleware import build_request_id_middleware
from admission.core.openapi import apply_openapi_customizations
from admission.core.policies import PolicyRegistry, build_default_policies
from admission.core.telemetry import EventSink, create_event_sink

logger = logging.getLogger(__name__)


def build_policy_registry(
    app_settings: Settings,
    store: CounterStore,
    sink: EventSink,
) -> PolicyRegistry:
    """Create the default policy table bound to ``store``.

    Policies key by caller IP unless an override selects ``"user"``, which
    keys by the user id in a bearer token verified with ``APP_JWT_SECRET``.
    """
    by_ip = ip_key_strategy(trust_forwarded_for=app_settings.app.trust_forwarded_for)
    by_user = user_key_strategy(
        secret=app_settings.app.jwt_secret,
        algorithms=app_settings.app.jwt_algorithm_list(),
    )
    policies = build_default_policies(
        key_strategy=by_ip,
        overrides=app_settings.rate_limit.policy_overrides,
        named_strategies={"ip": by_ip, "user": by_user},
    )
    return PolicyRegistry.from_policies(
        policies,
        store,
        sink=sink,
        store_timeout_seconds=app_settings.rate_limit.store_timeout_seconds,
    )


def create_app(
    app_settings: Settings | None = None,
    *,
    store: CounterStore | None = None,
    sink: EventSink | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to use; defaults to the environment-loaded ones.
        store: Counter store override (tests, custom backends).
        sink: Event sink override.
        configure_logs: Install the root log handler.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    cfg = app_settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(cfg.log)

    counter_store = store or create_counter_store(cfg.rate_limit)
    event_sink = sink or create_event_sink(cfg.rate_limit.metrics_backend)
    registry = build_policy_registry(cfg, counter_store, event_sink)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await counter_store.start()
        logger.info(
            "admission.started",
            extra={
                "store_backend": cfg.rate_limit.store_backend,
                "policies": list(registry),
                "enabled": cfg.rate_limit.enabled,
            },
        )
        try:
            yield
        finally:
            await counter_store.close()
            logger.info("admission.stopped")

    app = FastAPI(
        title="Admission Control API",
        description=(
            "Fixed-window admission control for HTTP handlers: named policies, "
            "per-IP or per-user counters, X-RateLimit-* headers and 429 rejections. "
            "Fails open when the counter store is unavailable."
        ),
        version="0.1.0",
        debug=cfg.app.debug,
        lifespan=lifespan,
    )

    app.state.settings = cfg
    app.state.rate_limit_settings = cfg.rate_limit
    app.state.counter_store = counter_store
    app.state.event_sink = event_sink
    app.state.policy_registry = registry

    # Middleware
    app.middleware("http")(build_request_id_middleware(cfg.log.request_id_header))

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(rate_limit_router, prefix="/v1")
    app.include_router(health_router)
    app.include_router(metrics_router)

    apply_openapi_customizations(app)

    return app
