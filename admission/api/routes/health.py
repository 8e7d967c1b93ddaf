from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Liveness check, never rate limited.

    Returns:
        dict: ``status`` plus the configured counter store backend.
    """

    rate_limit_settings = getattr(request.app.state, "rate_limit_settings", None)
    backend = rate_limit_settings.store_backend if rate_limit_settings else "unknown"
    return {"status": "ok", "store_backend": backend}
