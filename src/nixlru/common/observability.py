"""Logging and tracing for the cache proxy process."""

from __future__ import annotations

import logging
from typing import Dict

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars, clear_contextvars

from .settings import NixCacheSettings


SERVICE_NAME = "nixlru.cache_proxy"
# operational routes, not cache traffic
UNTRACED_ROUTES = "/healthz,/metrics,/status"

_stdlib_configured = False
_tracer_configured = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def proxy_log_context(settings: NixCacheSettings) -> Dict[str, object]:
    return {"state_dir": str(settings.state_dir), "upstream_count": len(settings.upstreams)}


def configure_logging(level: str | int | None = None, **context: object) -> None:
    """Emit one JSON object per log line through stdlib logging.

    ``context`` is bound to every event along with the service name.
    """

    global _stdlib_configured
    numeric_level = _log_level(level)
    if _stdlib_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _stdlib_configured = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    clear_contextvars()
    bind_contextvars(service=SERVICE_NAME, **context)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def configure_tracing(settings: NixCacheSettings) -> trace.TracerProvider:
    """Install the process tracer provider on first call.

    Spans are only exported when ``otel_exporter_endpoint`` is set. Sampling
    follows the parent span when there is one.
    """

    global _tracer_configured
    current = trace.get_tracer_provider()
    if _tracer_configured or isinstance(current, TracerProvider):
        _tracer_configured = True
        return current

    ratio = max(0.0, min(1.0, settings.otel_sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": SERVICE_NAME, "nixlru.state_dir": str(settings.state_dir)}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    if settings.otel_exporter_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_endpoint,
            headers=parse_otlp_headers(settings.otel_exporter_headers),
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _tracer_configured = True
    return provider


def instrument_upstream_client(client: httpx.AsyncClient) -> None:
    """Trace requests to upstream caches made through ``client`` only."""

    HTTPXClientInstrumentor.instrument_client(client, tracer_provider=trace.get_tracer_provider())


def instrument_fastapi_app(app) -> None:
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls=UNTRACED_ROUTES,
    )
