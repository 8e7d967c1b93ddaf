"""Named admission policies and the registry that serves them.

The registry is built once at startup (see ``create_app``) around a single
counter store and attached to ``app.state``; routes look limiters up by
name. Nothing here is module-level mutable state.
"""

from __future__ import annotations

import time
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

from admission.adapters.rate_limit.base import CounterStore
from admission.core.errors import ValidationAppError
from admission.core.key_strategies import (
    KeyStrategy,
    ip_key_strategy,
    user_key_strategy,
)
from admission.core.telemetry import EventSink
from admission.services.rate_limiter import Policy, RateLimiter

MINUTE = 60
HOUR = 60 * MINUTE

# name -> (window_seconds, max_requests, message, extra policy flags)
DEFAULT_POLICY_TABLE: Mapping[str, tuple[float, int, str, dict[str, Any]]] = MappingProxyType(
    {
        "api": (
            15 * MINUTE,
            100,
            "Too many API requests, please try again later.",
            {},
        ),
        "auth": (
            15 * MINUTE,
            5,
            "Too many login attempts, please try again later.",
            {"skip_successful_requests": True},
        ),
        "register": (
            HOUR,
            3,
            "Too many registration attempts, please try again later.",
            {},
        ),
        "email": (
            HOUR,
            10,
            "Too many email requests, please try again later.",
            {},
        ),
        "booking": (
            HOUR,
            20,
            "Too many booking attempts, please try again later.",
            {},
        ),
        "passwordReset": (
            HOUR,
            3,
            "Too many password reset attempts, please try again later.",
            {},
        ),
    }
)

_OVERRIDABLE_FIELDS = frozenset(
    {
        "window_seconds",
        "max_requests",
        "message",
        "skip_successful_requests",
        "skip_failed_requests",
        "key_strategy",
    }
)


def _named_strategy(
    policy: str, strategy_name: Any, named_strategies: Mapping[str, KeyStrategy]
) -> KeyStrategy:
    try:
        return named_strategies[strategy_name]
    except (KeyError, TypeError):
        raise ValidationAppError(
            code="invalid_rate_limit_override",
            message=f"Unknown key strategy {strategy_name!r} for policy '{policy}'",
            details={
                "policy": policy,
                "hint": f"Known strategies: {', '.join(named_strategies) or 'none'}",
            },
        ) from None


def build_default_policies(
    *,
    key_strategy: KeyStrategy | None = None,
    overrides: Mapping[str, Mapping[str, Any]] | None = None,
    named_strategies: Mapping[str, KeyStrategy] | None = None,
) -> list[Policy]:
    """Materialize the default policy table.

    Args:
        key_strategy: Strategy for every policy (defaults to per-IP).
        overrides: Per-policy field overrides from configuration. A
            ``key_strategy`` override is a name looked up in
            ``named_strategies``, e.g. ``{"email": {"key_strategy": "user"}}``.
        named_strategies: Strategies selectable by name from overrides.

    Returns:
        One ``Policy`` per table entry, overrides applied.

    Raises:
        ValidationAppError: If an override names an unknown policy or field,
            or produces an invalid policy.
    """
    strategy = key_strategy or ip_key_strategy()
    overrides = overrides or {}

    unknown = set(overrides) - set(DEFAULT_POLICY_TABLE)
    if unknown:
        raise ValidationAppError(
            code="unknown_rate_limit_policy",
            message=f"Overrides reference unknown policies: {', '.join(sorted(unknown))}",
            details={"hint": f"Known policies: {', '.join(DEFAULT_POLICY_TABLE)}"},
        )

    policies: list[Policy] = []
    for name, (window_seconds, max_requests, message, flags) in DEFAULT_POLICY_TABLE.items():
        changes = dict(overrides.get(name, {}))
        bad_fields = set(changes) - _OVERRIDABLE_FIELDS
        if bad_fields:
            raise ValidationAppError(
                code="invalid_rate_limit_override",
                message=f"Cannot override {', '.join(sorted(bad_fields))} for policy '{name}'",
                details={"policy": name},
            )
        if "key_strategy" in changes:
            changes["key_strategy"] = _named_strategy(
                name, changes["key_strategy"], named_strategies or {}
            )
        try:
            policy = Policy(
                name=name,
                window_seconds=window_seconds,
                max_requests=max_requests,
                message=message,
                key_strategy=strategy,
                **flags,
            ).with_overrides(**changes)
        except (TypeError, ValueError) as exc:
            raise ValidationAppError(
                code="invalid_rate_limit_override",
                message=f"Invalid override for policy '{name}': {exc}",
                details={"policy": name},
            ) from exc
        policies.append(policy)
    return policies


class PolicyRegistry(Mapping[str, RateLimiter]):
    """Read-only name -> RateLimiter table sharing one counter store."""

    def __init__(self, limiters: Mapping[str, RateLimiter]) -> None:
        self._limiters: Mapping[str, RateLimiter] = MappingProxyType(dict(limiters))

    @classmethod
    def from_policies(
        cls,
        policies: Iterable[Policy],
        store: CounterStore,
        *,
        sink: EventSink | None = None,
        clock: Callable[[], float] = time.time,
        store_timeout_seconds: float | None = None,
    ) -> "PolicyRegistry":
        limiters: dict[str, RateLimiter] = {}
        for policy in policies:
            if policy.name in limiters:
                raise ValidationAppError(
                    code="duplicate_rate_limit_policy",
                    message=f"Policy '{policy.name}' is defined more than once",
                    details={"policy": policy.name},
                )
            limiters[policy.name] = RateLimiter(
                policy,
                store,
                sink=sink,
                clock=clock,
                store_timeout_seconds=store_timeout_seconds,
            )
        return cls(limiters)

    def __getitem__(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._limiters)

    def __len__(self) -> int:
        return len(self._limiters)

    def limiter(self, name: str) -> RateLimiter:
        """Return the limiter for ``name``.

        Raises:
            ValidationAppError: If no policy has that name.
        """
        try:
            return self._limiters[name]
        except KeyError:
            raise ValidationAppError(
                code="unknown_rate_limit_policy",
                message=f"Unknown rate limit policy: '{name}'",
                details={"hint": f"Known policies: {', '.join(self._limiters)}"},
            ) from None


def create_ip_rate_limiter(
    name: str,
    *,
    window_seconds: float,
    max_requests: int,
    store: CounterStore,
    trust_forwarded_for: bool = True,
    sink: EventSink | None = None,
    clock: Callable[[], float] = time.time,
    store_timeout_seconds: float | None = None,
    **policy_kwargs: Any,
) -> RateLimiter:
    """Limiter keyed by caller IP."""
    policy = Policy(
        name=name,
        window_seconds=window_seconds,
        max_requests=max_requests,
        key_strategy=ip_key_strategy(trust_forwarded_for=trust_forwarded_for),
        **policy_kwargs,
    )
    return RateLimiter(
        policy, store, sink=sink, clock=clock, store_timeout_seconds=store_timeout_seconds
    )


def create_user_rate_limiter(
    name: str,
    *,
    window_seconds: float,
    max_requests: int,
    store: CounterStore,
    jwt_secret: str | None,
    jwt_algorithms: Sequence[str] = ("HS256",),
    sink: EventSink | None = None,
    clock: Callable[[], float] = time.time,
    store_timeout_seconds: float | None = None,
    **policy_kwargs: Any,
) -> RateLimiter:
    """Limiter keyed by the authenticated user id from the bearer token."""
    policy = Policy(
        name=name,
        window_seconds=window_seconds,
        max_requests=max_requests,
        key_strategy=user_key_strategy(secret=jwt_secret, algorithms=jwt_algorithms),
        **policy_kwargs,
    )
    return RateLimiter(
        policy, store, sink=sink, clock=clock, store_timeout_seconds=store_timeout_seconds
    )
