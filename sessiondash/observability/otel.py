"""OpenTelemetry + Prometheus fallback wiring for the SessionDash backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from sessiondash import config

logger = logging.getLogger("sessiondash.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_branch_ops_counter: Any | None = None
_branch_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None

_prom_enabled = False
_prom_branch_ops_counter: Any | None = None
_prom_branch_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _prom_labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _branch_ops_counter, _branch_latency_hist, _parser_failure_counter
    global _prom_enabled, _prom_branch_ops_counter, _prom_branch_latency_hist, _prom_parser_failure_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (SESSIONDASH_OTEL_ENABLED=false)")
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

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "sessiondash-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "sessiondash",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("sessiondash.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("sessiondash.backend")

    _branch_ops_counter = meter.create_counter(
        "sessiondash_branch_operations_total",
        unit="1",
        description="Structural log mutations by operation and outcome",
    )
    _branch_latency_hist = meter.create_histogram(
        "sessiondash_branch_operation_latency_ms",
        unit="ms",
        description="Latency of restore, duplicate and materialize operations",
    )
    _parser_failure_counter = meter.create_counter(
        "sessiondash_parser_dropped_lines_total",
        unit="1",
        description="Malformed log lines dropped by the event parser",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_branch_ops_counter = Counter(
                "sessiondash_branch_operations_total",
                "Structural log mutations by operation and outcome",
                ["operation", "outcome"],
            )
            _prom_branch_latency_hist = Histogram(
                "sessiondash_branch_operation_latency_ms",
                "Latency of restore, duplicate and materialize operations",
                ["operation", "outcome"],
            )
            _prom_parser_failure_counter = Counter(
                "sessiondash_parser_dropped_lines_total",
                "Malformed log lines dropped by the event parser",
                ["source"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception:
        pass
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception:
        pass
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception:
        pass
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_branch_operation(operation: str, outcome: str, duration_ms: float) -> None:
    labels = {
        "operation": operation or "unknown",
        "outcome": outcome or "unknown",
    }
    if _enabled and _branch_ops_counter is not None:
        _branch_ops_counter.add(1, labels)
    if _enabled and _branch_latency_hist is not None:
        _branch_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_branch_ops_counter is not None:
        _prom_branch_ops_counter.labels(**_prom_labels(operation=operation, outcome=outcome)).inc()
    if _prom_enabled and _prom_branch_latency_hist is not None:
        prom = _prom_labels(operation=operation, outcome=outcome)
        _prom_branch_latency_hist.labels(**prom).observe(max(0.0, float(duration_ms)))


def record_parser_failure(source: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(safe_count, {"source": source or "unknown"})
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**_prom_labels(source=source)).inc(safe_count)
