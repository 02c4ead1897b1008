from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from prospect_crm.core.config import get_settings


SERVICE_NAME = "prospect-crm"

_provider: TracerProvider | None = None
_exported_endpoints: set[str] = set()


def _tracer_provider() -> TracerProvider:
    global _provider

    if _provider is None:
        settings = get_settings()
        _provider = TracerProvider(
            resource=Resource.create({"service.name": SERVICE_NAME, "deployment.environment": settings.app_env})
        )
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(endpoint: str | None = None) -> TracerProvider:
    """Install the service tracer provider, shipping spans over OTLP when an endpoint is set."""
    provider = _tracer_provider()
    if endpoint and endpoint not in _exported_endpoints:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        _exported_endpoints.add(endpoint)
    return provider


def setup_inmemory_otel() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider().add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def correlation_id_request_hook(span: Any, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id" and value:
            span.set_attribute("correlation_id", value.decode("utf-8"))
            return
