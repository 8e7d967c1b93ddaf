"""Key strategies: derive the rate-limit partition for a request.

A key strategy is a plain callable ``(Request) -> str`` returning a scope
such as ``ip:203.0.113.7`` or ``user:42``. The limiter prefixes it with the
policy name, so the same caller has independent counters per policy.

Built-ins:
- ``ip_key_strategy``: first X-Forwarded-For hop, else the socket peer.
- ``user_key_strategy``: authenticated user id from a bearer JWT (or the
  ``token`` cookie), ``anonymous`` when absent or not decodable.
- ``custom_key_strategy`` / ``ip_and_path_key_strategy``: caller-defined and
  composite keys.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from fastapi import Request
from jose import JWTError, jwt

from admission.core.errors import KeyDerivationError

logger = logging.getLogger(__name__)

KeyStrategy = Callable[[Request], str]

UNKNOWN_IP = "unknown"
ANONYMOUS_USER = "anonymous"
TOKEN_COOKIE = "token"
USER_ID_CLAIMS = ("userId", "sub")


def get_client_ip(request: Request, *, trust_forwarded_for: bool = True) -> str:
    """Resolve the caller address.

    Args:
        request: Incoming request.
        trust_forwarded_for: Honour ``X-Forwarded-For`` (set behind a proxy).

    Returns:
        First forwarded address, the transport peer, or ``"unknown"``.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_IP


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def ip_key_strategy(*, trust_forwarded_for: bool = True) -> KeyStrategy:
    def ip_key(request: Request) -> str:
        return f"ip:{get_client_ip(request, trust_forwarded_for=trust_forwarded_for)}"

    return ip_key


def extract_bearer_token(request: Request) -> str | None:
    """Return the bearer token from Authorization, else the session cookie."""
    auth_header = request.headers.get("authorization")
    if auth_header:
        scheme, _, credentials = auth_header.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return request.cookies.get(TOKEN_COOKIE) or None


def decode_user_id(token: str, *, secret: str | None, algorithms: Sequence[str]) -> str:
    """Verify a JWT and return the user id claim.

    Tokens carry the id in ``userId`` (as issued by the auth service) or in
    the registered ``sub`` claim.

    Raises:
        KeyDerivationError: If no secret is configured, the token fails
            verification/expiry checks, or no id claim is present.
    """
    if not secret:
        raise KeyDerivationError(
            code="jwt_secret_not_configured",
            message="Cannot verify bearer token: APP_JWT_SECRET is not set",
        )

    try:
        claims: dict[str, Any] = jwt.decode(token, secret, algorithms=list(algorithms))
    except JWTError as exc:
        raise KeyDerivationError(
            code="invalid_token",
            message="Bearer token could not be verified",
            details={"context": {"error_type": type(exc).__name__}},
        ) from exc

    for claim in USER_ID_CLAIMS:
        value = claims.get(claim)
        if value not in (None, ""):
            return str(value)

    raise KeyDerivationError(
        code="missing_user_claim",
        message="Bearer token has no user id claim",
        details={"hint": f"Expected one of: {', '.join(USER_ID_CLAIMS)}"},
    )


def user_key_strategy(
    *,
    secret: str | None,
    algorithms: Sequence[str] = ("HS256",),
) -> KeyStrategy:
    """Partition by authenticated user.

    Requests without a credential share the ``user:anonymous`` bucket. A
    credential that cannot be decoded is logged at warning level and also
    falls back to ``anonymous``; the request is still counted.
    """
    accepted = tuple(algorithms)

    def user_key(request: Request) -> str:
        token = extract_bearer_token(request)
        if token is None:
            return f"user:{ANONYMOUS_USER}"
        try:
            return f"user:{decode_user_id(token, secret=secret, algorithms=accepted)}"
        except KeyDerivationError as exc:
            logger.warning(
                "key_strategy.decode_failed",
                extra={
                    "reason": exc.code,
                    "ip": get_client_ip(request),
                    "path": request.url.path,
                },
            )
            return f"user:{ANONYMOUS_USER}"

    return user_key


def custom_key_strategy(func: Callable[[Request], str]) -> KeyStrategy:
    """Wrap a caller-supplied key function, guarding against empty scopes."""

    def custom_key(request: Request) -> str:
        scope = func(request)
        if not scope:
            raise KeyDerivationError(
                code="empty_rate_limit_key",
                message="Custom key strategy returned an empty key",
            )
        return scope

    return custom_key


def ip_and_path_key_strategy(*, trust_forwarded_for: bool = True) -> KeyStrategy:
    """Composite key: caller IP plus route path."""

    def ip_and_path_key(request: Request) -> str:
        ip = get_client_ip(request, trust_forwarded_for=trust_forwarded_for)
        return f"ip:{ip}:path:{request.url.path}"

    return ip_and_path_key
