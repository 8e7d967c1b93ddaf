"""Unit tests for event sinks."""

import logging

from prometheus_client import CollectorRegistry

from admission.core.telemetry import EventSink, PrometheusEventSink, create_event_sink


def test_log_maps_level_names(caplog) -> None:
    sink = EventSink()

    with caplog.at_level(logging.DEBUG, logger="admission.events"):
        sink.log("warn", "rate_limit.exceeded", {"policy": "api"})
        sink.log("bogus", "something.else")

    levels = {r.getMessage(): r.levelno for r in caplog.records}
    assert levels["rate_limit.exceeded"] == logging.WARNING
    assert levels["something.else"] == logging.INFO
    assert caplog.records[0].policy == "api"


def test_log_contains_reserved_context_keys(caplog) -> None:
    sink = EventSink()

    # "message" clashes with LogRecord attributes; the sink must not raise
    with caplog.at_level(logging.ERROR):
        sink.log("error", "event", {"message": "clash"})

    assert any(r.getMessage() == "telemetry.log_failed" for r in caplog.records)


def test_default_sink_discards_metrics() -> None:
    EventSink().record_metric("rate_limit.allowed", 1, {"policy": "api"})


def test_prometheus_sink_counts_by_event_and_policy() -> None:
    registry = CollectorRegistry()
    sink = PrometheusEventSink(registry=registry)

    sink.record_metric("rate_limit.denied", 1, {"policy": "auth"})
    sink.record_metric("rate_limit.denied", 2, {"policy": "auth"})
    sink.record_metric("rate_limit.fail_open")

    assert registry.get_sample_value(
        "admission_events_total", {"event": "rate_limit.denied", "policy": "auth"}
    ) == 3.0
    assert registry.get_sample_value(
        "admission_events_total", {"event": "rate_limit.fail_open", "policy": "unknown"}
    ) == 1.0


def test_create_event_sink() -> None:
    assert isinstance(create_event_sink("prometheus"), PrometheusEventSink)
    assert type(create_event_sink("none")) is EventSink
