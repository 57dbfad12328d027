from __future__ import annotations

import json
import logging

import structlog
from fastapi import FastAPI
from opentelemetry import trace

from edgegate.common import observability
from edgegate.common.settings import GatewaySettings


def _configure(monkeypatch, level: str = "INFO") -> None:
    monkeypatch.setattr(observability, "_logging_configured", False)
    observability.configure_logging("edgegate.test", level)


def test_configure_logging_emits_json(caplog, monkeypatch):
    _configure(monkeypatch)
    logger = structlog.get_logger("edgegate.test.json")

    with caplog.at_level(logging.INFO):
        logger.info("structured-event", key="u/c/a.txt")

    payload = json.loads(caplog.records[-1].message)
    assert payload["message"] == "structured-event"
    assert payload["key"] == "u/c/a.txt"
    assert payload["service"] == "edgegate.test"
    assert payload["level"] == "info"


def test_unknown_level_falls_back_to_info(monkeypatch):
    _configure(monkeypatch, "nonsense")
    assert logging.getLogger().level == logging.INFO
    _configure(monkeypatch, "debug")
    assert logging.getLogger().level == logging.DEBUG
    _configure(monkeypatch)


def test_events_carry_active_trace_ids(caplog, monkeypatch):
    _configure(monkeypatch)
    observability.configure_tracing("edgegate.test", None, None, 1.0)
    logger = structlog.get_logger("edgegate.test.trace")
    tracer = trace.get_tracer("edgegate.test")

    with caplog.at_level(logging.INFO), tracer.start_as_current_span("storage.request") as span:
        logger.info("inside-span")
    span_context = span.get_span_context()

    payload = json.loads(caplog.records[-1].message)
    assert payload["trace_id"] == format(span_context.trace_id, "032x")
    assert payload["span_id"] == format(span_context.span_id, "016x")


def test_identity_context_is_scoped(caplog, monkeypatch):
    _configure(monkeypatch)
    logger = structlog.get_logger("edgegate.test.identity")

    with caplog.at_level(logging.INFO):
        with observability.identity_context("abc", "1234"):
            logger.info("scoped")
        logger.info("unscoped")

    scoped, unscoped = (json.loads(record.message) for record in caplog.records[-2:])
    assert scoped["client_id"] == "abc"
    assert scoped["user_id"] == "1234"
    assert "client_id" not in unscoped


def test_otel_headers_parsed_from_settings():
    settings = GatewaySettings(otel_exporter_headers="authorization=Bearer token, custom=abc, broken")
    assert settings.otel_headers == {"authorization": "Bearer token", "custom": "abc"}
    assert GatewaySettings(otel_exporter_headers=None).otel_headers == {}


def test_instrument_fastapi_app_marks_app(monkeypatch):
    monkeypatch.setattr(observability, "_tracer_configured", False)
    app = FastAPI()
    observability.configure_tracing("edgegate.obs", None, None, 1.0)
    observability.instrument_fastapi_app(app)
    assert getattr(app, "_is_instrumented_by_opentelemetry", False)
