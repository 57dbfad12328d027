"""Logging and tracing for the gateway.

Every log event is a JSON document carrying the ``service`` name, the active
trace and span ids, and whatever request context the dispatcher has bound
(method, path, ``client_id``, ``user_id``, object ``key``).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Mapping, Optional

import httpx
import structlog
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars, bound_contextvars

SERVICE_NAME = "edgegate.gateway"

_logging_configured = False
_tracer_configured = False


def add_trace_context(logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor correlating events with the active OpenTelemetry span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict.setdefault("trace_id", format(span_context.trace_id, "032x"))
        event_dict.setdefault("span_id", format(span_context.span_id, "016x"))
    return event_dict


def configure_logging(service_name: str = SERVICE_NAME, level: str = "INFO") -> None:
    global _logging_configured
    numeric_level = logging.getLevelNamesMapping().get(level.strip().upper(), logging.INFO)
    if not _logging_configured:
        logging.basicConfig(format="%(message)s")
        _logging_configured = True
    logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


@contextmanager
def identity_context(client_id: str, user_id: Optional[str] = None) -> Iterator[None]:
    """Attach the validated caller to the current span and to log events in scope."""
    span = trace.get_current_span()
    span.set_attribute("edgegate.client_id", client_id)
    if user_id:
        span.set_attribute("edgegate.user_id", user_id)
    with bound_contextvars(client_id=client_id, user_id=user_id):
        yield


def configure_tracing(
    service_name: str = SERVICE_NAME,
    endpoint: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install the tracer provider once per process.

    Spans go to the OTLP HTTP endpoint when one is configured and are kept in
    memory otherwise.
    """

    global _tracer_configured
    if _tracer_configured:
        return

    if isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    resource = Resource.create({"service.name": service_name})
    sampler = TraceIdRatioBased(max(0.0, min(1.0, sampler_ratio)))
    provider = TracerProvider(resource=resource, sampler=sampler)

    if endpoint:
        processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=dict(headers or {})))
    else:
        processor = SimpleSpanProcessor(InMemorySpanExporter())

    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    _tracer_configured = True


def instrument_http_client(client: httpx.AsyncClient) -> httpx.AsyncClient:
    """Trace calls to the identity provider made through ``client``."""
    HTTPXClientInstrumentor.instrument_client(client, tracer_provider=trace.get_tracer_provider())
    return client


def instrument_fastapi_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())
