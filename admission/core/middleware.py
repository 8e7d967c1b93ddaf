"""HTTP middleware for request ID propagation and correlation.

Every request/response pair carries a correlation id so admission decisions
logged deep inside the limiter can be joined with access logs.

Usage:
    app.middleware("http")(build_request_id_middleware(settings.log.request_id_header))
"""

from __future__ import annotations

import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response

from admission.core.logging import clear_request_id, set_request_id

CallNext = Callable[[Request], Awaitable[Response]]


def build_request_id_middleware(header_name: str = "X-Request-ID"):
    """Create the request-id middleware bound to a header name.

    The incoming header value is reused when present, otherwise a UUID4 is
    generated. The id is echoed back together with ``X-Request-Duration-ms``
    and cleared from context once the response is produced.

    Args:
        header_name: Header carrying the correlation id.

    Returns:
        An ``async (request, call_next)`` middleware callable.
    """

    async def request_id_middleware(request: Request, call_next: CallNext) -> Response:
        request_id = request.headers.get(header_name) or str(uuid.uuid4())
        set_request_id(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            clear_request_id()

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers[header_name] = request_id
        response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
        return response

    return request_id_middleware
