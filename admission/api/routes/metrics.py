from __future__ import annotations

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from admission.core.telemetry import PrometheusEventSink

router = APIRouter(tags=["Health"])


@router.get("/metrics", include_in_schema=False)
def metrics(request: Request) -> Response:
    """Prometheus exposition of admission counters.

    Returns 404 unless the Prometheus sink is configured.
    """
    sink = getattr(request.app.state, "event_sink", None)
    if not isinstance(sink, PrometheusEventSink):
        return Response(status_code=404)
    return Response(content=generate_latest(sink.registry), media_type=CONTENT_TYPE_LATEST)
