import logging
import os
from contextlib import contextmanager
from typing import Dict, Optional

from fastapi import FastAPI

from opentelemetry import trace
from opentelemetry.trace import Tracer
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from services.studio.app.context import get_app_id, get_request_id

logger = logging.getLogger(__name__)

_OTEL_ENABLED_ENV = "STUDIO_OTEL_ENABLED"
_OTEL_EXPORTER_ENV = "STUDIO_OTEL_EXPORTER"  # "stdout" (default) | "otlp"
_OTLP_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

_SERVICE_NAME = "playforge-studio"

_provider: Optional[TracerProvider] = None
_tracer: Optional[Tracer] = None


def otel_enabled() -> bool:
    """
    Returns True when telemetry is enabled via env (default False).
    """
    return os.getenv(_OTEL_ENABLED_ENV, "false").lower() in ("1", "true", "yes")


def _init_provider() -> None:
    global _provider, _tracer

    resource = Resource.create({"service.name": _SERVICE_NAME})
    provider = TracerProvider(resource=resource)

    exporter_selection = os.getenv(_OTEL_EXPORTER_ENV, "stdout").lower()
    endpoint = os.getenv(_OTLP_ENDPOINT_ENV)
    if exporter_selection == "otlp" and endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    else:
        if exporter_selection == "otlp":
            logger.warning(f"{_OTLP_ENDPOINT_ENV} not set; falling back to stdout span exporter")
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _provider = provider
    _tracer = trace.get_tracer(_SERVICE_NAME)


def start_telemetry(app: FastAPI) -> None:
    """
    Initializes the provider and instruments the app. Called from the lifespan;
    no-op when telemetry is disabled.
    """
    if not otel_enabled():
        return
    _init_provider()
    FastAPIInstrumentor.instrument_app(app)


def stop_telemetry() -> None:
    global _provider
    try:
        if _provider is not None:
            _provider.shutdown()
    finally:
        _provider = None


def get_tracer() -> Optional[Tracer]:
    return _tracer if otel_enabled() else None


@contextmanager
def span(name: str, attributes: Optional[Dict[str, object]] = None):
    """
    Span tagged with the current request and app ids, or a no-op when telemetry is
    off. Yields the span (None when off) so callers can attach attributes they only
    learn inside the block.
    """
    tracer = get_tracer()
    if tracer is None:
        yield None
        return

    attrs: Dict[str, object] = {"studio.request_id": get_request_id(), "studio.app_id": get_app_id()}
    attrs.update(attributes or {})

    with tracer.start_as_current_span(name) as s:
        for k, v in attrs.items():
            if v is not None:
                s.set_attribute(k, v)
        yield s
