"""Admission control for FastAPI routes.

This module wires ``RateLimiter`` decisions into the HTTP layer:

- ``AdmissionControl``: the pipeline stage. It asks the limiter, forwards
  admitted requests with ``X-RateLimit-*`` headers and short-circuits
  rejected ones with a 429 JSON body. The wrapped handler never runs for a
  rejected request.
- ``with_admission_control``: decorator form for individual route handlers.
- ``admission_middleware``: app-wide form for ``app.middleware("http")``.
- ``check_status``: read-only quota introspection.

Any failure inside the limiter (store down or slow, key derivation bug)
fails open: it is logged and the request proceeds without rate headers.
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Awaitable, Callable

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from admission.core.errors import ValidationAppError
from admission.services.rate_limiter import AdmissionDecision, RateLimiter

logger = logging.getLogger(__name__)

REJECTION_ERROR = "Rate limit exceeded"

CallNext = Callable[[Request], Awaitable[Response]]


def build_rejection_response(decision: AdmissionDecision, message: str) -> JSONResponse:
    """Render a denied decision as HTTP 429."""
    retry_after = decision.retry_after or 1
    headers = decision.rate_limit_headers()
    headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=429,
        content={
            "error": REJECTION_ERROR,
            "message": message,
            "retryAfter": retry_after,
        },
        headers=headers,
    )


class AdmissionControl:
    """Wrap, short-circuit, or forward a request for one limiter.

    Instances are ``async (request, call_next) -> Response`` callables, so the
    same object serves as HTTP middleware and as the core of the decorator.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        enabled: bool = True,
        include_headers: bool = True,
    ) -> None:
        self.limiter = limiter
        self.enabled = enabled
        self.include_headers = include_headers

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        if not self.enabled:
            return await call_next(request)

        decision = await self._decide(request)
        if decision is None:
            return await call_next(request)

        if not decision.allowed:
            return build_rejection_response(decision, self.limiter.policy.message)

        defers = self.limiter.policy.defers_increment
        try:
            response = await call_next(request)
        except Exception:
            # Unhandled errors become a 500 further out; count them as failures.
            if defers:
                await self._record(request, 500, decision)
            raise

        if defers:
            decision = await self._record(request, response.status_code, decision)

        if self.include_headers:
            response.headers.update(decision.rate_limit_headers())
        return response

    async def _decide(self, request: Request) -> AdmissionDecision | None:
        try:
            if self.limiter.policy.defers_increment:
                return await self.limiter.peek(request)
            return await self.limiter.check_limit(request)
        except Exception as exc:
            self._fail_open(request, "decide", exc)
            return None

    async def _record(
        self, request: Request, status_code: int, decision: AdmissionDecision
    ) -> AdmissionDecision:
        try:
            entry = await self.limiter.record(request, status_code)
        except Exception as exc:
            self._fail_open(request, "record", exc)
            return decision
        return decision.settled(entry)

    def _fail_open(self, request: Request, stage: str, exc: Exception) -> None:
        policy = self.limiter.policy.name
        self.limiter.sink.log(
            "error",
            "rate_limit.store_error",
            {
                "policy": policy,
                "key": self._safe_key(request),
                "stage": stage,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
                "path": request.url.path,
            },
        )
        self.limiter.sink.record_metric("rate_limit.fail_open", 1, {"policy": policy})

    def _safe_key(self, request: Request) -> str | None:
        try:
            return self.limiter.key_for(request)
        except Exception:
            return None


def admission_middleware(limiter: RateLimiter, **options: Any) -> AdmissionControl:
    """App-wide admission control.

    Usage:
        app.middleware("http")(admission_middleware(registry.limiter("api")))
    """
    return AdmissionControl(limiter, **options)


def _find_request(args: tuple[Any, ...], kwargs: dict[str, Any]) -> Request:
    for value in (*args, *kwargs.values()):
        if isinstance(value, Request):
            return value
    raise TypeError(
        "with_admission_control requires the handler to accept a 'request: Request' parameter"
    )


def _resolve_limiter(policy: RateLimiter | str, request: Request) -> RateLimiter:
    if isinstance(policy, RateLimiter):
        return policy
    registry = getattr(request.app.state, "policy_registry", None)
    if registry is None:
        raise ValidationAppError(
            code="policy_registry_missing",
            message="No policy registry is attached to the application",
            details={"policy": policy, "hint": "Build the app with create_app()"},
        )
    return registry.limiter(policy)


def _options_from_app(request: Request) -> dict[str, Any]:
    rate_limit_settings = getattr(request.app.state, "rate_limit_settings", None)
    if rate_limit_settings is None:
        return {}
    return {
        "enabled": rate_limit_settings.enabled,
        "include_headers": rate_limit_settings.include_headers,
    }


async def _render_handled_error(request: Request, exc: Exception) -> Response | None:
    """Render ``exc`` with the app's own exception handler, if one is registered.

    The catch-all ``Exception`` handler is skipped so unexpected errors keep
    propagating to the server error middleware.
    """
    handlers = getattr(request.app, "exception_handlers", {})
    for cls in type(exc).__mro__:
        if cls is Exception:
            return None
        exc_handler = handlers.get(cls)
        if exc_handler is None:
            continue
        if inspect.iscoroutinefunction(exc_handler):
            return await exc_handler(request, exc)
        return await run_in_threadpool(exc_handler, request, exc)
    return None


def with_admission_control(policy: RateLimiter | str):
    """Compose a route handler with admission control.

    ``policy`` is either a ``RateLimiter`` or the name of a policy in the
    application's registry, resolved per request. The handler must accept a
    ``request: Request`` argument; non-``Response`` return values are
    JSON-encoded. Errors the handler raises (``HTTPException``, ``AppError``)
    are rendered by the application's exception handlers before admission
    sees the response, so a raised 401 counts as a failed request and still
    carries rate headers.

    Usage:
        @router.post("/auth/login")
        @with_admission_control("auth")
        async def login(request: Request) -> dict: ...
    """

    def decorator(handler: Callable[..., Awaitable[Any]]):
        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> Response:
            request = _find_request(args, kwargs)
            control = AdmissionControl(
                _resolve_limiter(policy, request), **_options_from_app(request)
            )

            async def call_handler(_: Request) -> Response:
                try:
                    result = await handler(*args, **kwargs)
                except Exception as exc:
                    response = await _render_handled_error(request, exc)
                    if response is None:
                        raise
                    return response
                if isinstance(result, Response):
                    return result
                return JSONResponse(content=jsonable_encoder(result))

            return await control(request, call_handler)

        return wrapper

    return decorator


async def check_status(request: Request, limiter: RateLimiter) -> dict[str, Any]:
    """Current quota for the caller under ``limiter``, without consuming it.

    Raises:
        StoreUnavailableError: If the counter store cannot be read.
    """
    decision = await limiter.status(request)
    return {
        "limit": decision.limit,
        "remaining": decision.remaining,
        "resetTime": decision.reset_at_iso(),
        "retryAfter": decision.retry_after,
    }
