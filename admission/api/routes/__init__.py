from __future__ import annotations

from admission.api.routes.health import router as health_router
from admission.api.routes.metrics import router as metrics_router
from admission.api.routes.rate_limit import router as rate_limit_router

__all__ = ["health_router", "metrics_router", "rate_limit_router"]
