from __future__ import annotations

from fastapi import APIRouter, Request

from admission.core.rate_limit import check_status
from admission.schemas.rate_limit import RateLimitStatusResponse

router = APIRouter(tags=["Rate Limit"])


@router.get(
    "/rate-limit/status/{policy}",
    response_model=RateLimitStatusResponse,
    response_model_by_alias=True,
    responses={404: {"description": "Unknown policy"}, 503: {"description": "Store unavailable"}},
)
async def rate_limit_status(policy: str, request: Request) -> RateLimitStatusResponse:
    """Report the caller's quota for a policy without consuming it.

    Args:
        policy: Registry name (e.g. ``api``, ``auth``, ``booking``).
        request: Incoming request; its IP/credential select the counter.

    Returns:
        RateLimitStatusResponse: limit, remaining, resetTime and retryAfter.

    Raises:
        ValidationAppError: Unknown policy (rendered as 404).
        StoreUnavailableError: Counter store unreachable (rendered as 503).
    """
    limiter = request.app.state.policy_registry.limiter(policy)
    status = await check_status(request, limiter)
    return RateLimitStatusResponse(policy=policy, **status)


@router.get("/rate-limit/policies")
async def list_policies(request: Request) -> dict:
    """List configured policies and their limits."""
    registry = request.app.state.policy_registry
    return {
        "policies": [
            {
                "name": name,
                "window_seconds": limiter.policy.window_seconds,
                "max_requests": limiter.policy.max_requests,
                "message": limiter.policy.message,
            }
            for name, limiter in registry.items()
        ]
    }
