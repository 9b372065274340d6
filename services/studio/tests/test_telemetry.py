import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from services.studio.app import telemetry
from services.studio.app.context import request_id_var
from services.studio.app.telemetry import span


@pytest.fixture
def exporter(monkeypatch):
    monkeypatch.setenv("STUDIO_OTEL_ENABLED", "true")
    exp = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exp))
    monkeypatch.setattr(telemetry, "_tracer", provider.get_tracer("studio-test"))
    yield exp
    provider.shutdown()


def test_span_is_noop_when_disabled(monkeypatch):
    monkeypatch.delenv("STUDIO_OTEL_ENABLED", raising=False)
    with span("studio.chat", {"studio.app_id": "app-1"}) as s:
        assert s is None


def test_span_carries_request_context_and_late_attributes(exporter):
    token = request_id_var.set("req-42")
    try:
        with span("studio.chat", {"studio.repo": "repo-1"}) as s:
            s.set_attribute("studio.agent", "builder")
    finally:
        request_id_var.reset(token)

    (finished,) = exporter.get_finished_spans()
    assert finished.name == "studio.chat"
    attrs = dict(finished.attributes)
    assert attrs["studio.request_id"] == "req-42"
    assert attrs["studio.repo"] == "repo-1"
    assert attrs["studio.agent"] == "builder"
    # unset context values are left off
    assert "studio.app_id" not in attrs


def test_explicit_attributes_override_context(exporter):
    with span("studio.stream.supersede", {"studio.app_id": "app-7"}):
        pass
    (finished,) = exporter.get_finished_spans()
    assert finished.attributes["studio.app_id"] == "app-7"
