"""Event sinks consumed by the admission layer.

The limiter reports into two fire-and-forget channels:

- ``log(level, message, context)`` for structured events
- ``record_metric(name, value, tags)`` for counters

Neither may block or fail an admission decision, so sink errors are
contained here and reported through the module logger.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from prometheus_client import CollectorRegistry, Counter

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class EventSink:
    """Default sink: structured logging, metrics discarded.

    Subclasses override ``_emit_metric`` to ship metrics somewhere.
    """

    def __init__(self, logger_name: str = "admission.events") -> None:
        self._logger = logging.getLogger(logger_name)

    def log(self, level: str, message: str, context: Mapping[str, Any] | None = None) -> None:
        try:
            self._logger.log(
                _LEVELS.get(level.lower(), logging.INFO),
                message,
                extra=dict(context or {}),
            )
        except Exception:
            logger.exception("telemetry.log_failed", extra={"event": message})

    def record_metric(
        self,
        name: str,
        value: float = 1,
        tags: Mapping[str, str] | None = None,
    ) -> None:
        try:
            self._emit_metric(name, value, dict(tags or {}))
        except Exception:
            logger.exception("telemetry.metric_failed", extra={"metric": name})

    def _emit_metric(self, name: str, value: float, tags: dict[str, str]) -> None:
        return None


class PrometheusEventSink(EventSink):
    """Sink that also counts admission outcomes in Prometheus.

    Metric names such as ``rate_limit.denied`` become the ``event`` label
    of a single ``admission_events_total`` counter, labelled by policy.
    """

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        logger_name: str = "admission.events",
    ) -> None:
        super().__init__(logger_name)
        self.registry = registry or CollectorRegistry()
        self._events = Counter(
            "admission_events_total",
            "Admission control events by policy",
            ["event", "policy"],
            registry=self.registry,
        )

    def _emit_metric(self, name: str, value: float, tags: dict[str, str]) -> None:
        self._events.labels(event=name, policy=tags.get("policy", "unknown")).inc(value)


def create_event_sink(metrics_backend: str) -> EventSink:
    """Return the sink for ``RATE_LIMIT_METRICS_BACKEND``."""
    if metrics_backend == "prometheus":
        return PrometheusEventSink()
    return EventSink()
