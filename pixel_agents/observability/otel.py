"""OpenTelemetry + Prometheus fallback wiring for the Pixel Agents server."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, NamedTuple

from fastapi import FastAPI

from pixel_agents import config

logger = logging.getLogger("pixel_agents.observability")


class _Instrument(NamedTuple):
    name: str
    description: str
    labels: tuple[str, ...]
    unit: str = "1"


_INSTRUMENTS = {
    "discovery": _Instrument("pixel_agents_discoveries_total", "Session files surfaced by the scanners", ("node",)),
    "scan_failure": _Instrument(
        "pixel_agents_scan_failures_total", "Scan cycles that could not list a node", ("node", "kind")
    ),
    "lifecycle": _Instrument(
        "pixel_agents_agent_lifecycle_total", "Agent lifecycle transitions (created, rotated, removed)", ("event", "node")
    ),
    "tail_bytes": _Instrument("pixel_agents_tail_bytes_total", "Transcript bytes consumed by tailers", ("node",), "By"),
    "operation": _Instrument(
        "pixel_agents_operations_started_total", "Operations (tool calls) started by tracked agents", ("node",)
    ),
}

_initialized = False
_enabled = False
_tracer: Any | None = None
_providers: list[Any] = []
_fastapi_instrumentor: Any | None = None
_otel_counters: dict[str, Any] = {}
_prom_counters: dict[str, Any] = {}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _fastapi_instrumentor

    if _initialized:
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (PIXEL_AGENTS_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    endpoint = config.OTEL_ENDPOINT.strip().rstrip("/")
    resource = Resource.create({"service.name": config.OTEL_SERVICE_NAME, "service.namespace": "pixel-agents"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")))
    trace.set_tracer_provider(trace_provider)

    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics"))
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("pixel_agents")

    for key, instrument in _INSTRUMENTS.items():
        _otel_counters[key] = meter.create_counter(
            instrument.name, unit=instrument.unit, description=instrument.description
        )

    _providers.extend([meter_provider, trace_provider])
    _tracer = trace.get_tracer("pixel_agents")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True
    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus(config.PROM_PORT)

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", config.OTEL_SERVICE_NAME, endpoint)


def _start_prometheus(port: int) -> None:
    try:
        from prometheus_client import Counter, start_http_server
    except ImportError as exc:
        logger.warning("Prometheus fallback unavailable: %s", exc)
        return
    try:
        start_http_server(port)
    except OSError as exc:
        logger.warning("Prometheus fallback not started: %s", exc)
        return
    for key, instrument in _INSTRUMENTS.items():
        _prom_counters[key] = Counter(instrument.name, instrument.description, list(instrument.labels))
    logger.info("Prometheus fallback metrics server listening on port %s", port)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if app and _fastapi_instrumentor:
        try:
            _fastapi_instrumentor.uninstrument_app(app)
        except Exception as exc:
            logger.debug("FastAPI uninstrumentation failed: %s", exc)
    while _providers:
        provider = _providers.pop()
        try:
            provider.shutdown()
        except Exception as exc:
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _record(key: str, amount: int = 1, **values: str) -> None:
    labels = {label: (value or "").strip() or "unknown" for label, value in values.items()}
    counter = _otel_counters.get(key)
    if _enabled and counter is not None:
        counter.add(amount, labels)
    prom_counter = _prom_counters.get(key)
    if prom_counter is not None:
        prom_counter.labels(**labels).inc(amount)


def record_discovery(node: str) -> None:
    _record("discovery", node=node)


def record_scan_failure(node: str, kind: str) -> None:
    _record("scan_failure", node=node, kind=kind)


def record_agent_lifecycle(event: str, node: str) -> None:
    _record("lifecycle", event=event, node=node)


def record_tail_bytes(node: str, count: int) -> None:
    if count > 0:
        _record("tail_bytes", int(count), node=node)


def record_operation_started(node: str) -> None:
    _record("operation", node=node)
