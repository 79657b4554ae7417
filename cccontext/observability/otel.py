"""OpenTelemetry + Prometheus fallback wiring for cccontext."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from cccontext import config

logger = logging.getLogger("cccontext.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_ingestion_counter: Any | None = None
_ingestion_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_tokens_counter: Any | None = None
_cost_counter: Any | None = None

_prom_enabled = False
_prom_ingestion_counter: Any | None = None
_prom_ingestion_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_tokens_counter: Any | None = None
_prom_cost_counter: Any | None = None


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


def _clean(value: str | None, default: str = "unknown") -> str:
    return (value or "").strip() or default


def _start_prometheus() -> None:
    global _prom_enabled
    global _prom_ingestion_counter, _prom_ingestion_latency_hist, _prom_parser_failure_counter
    global _prom_tokens_counter, _prom_cost_counter

    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_ingestion_counter = Counter(
            "cccontext_ingestion_events_total",
            "Count of session read operations",
            ["entity", "result"],
        )
        _prom_ingestion_latency_hist = Histogram(
            "cccontext_ingestion_latency_ms",
            "Latency for session reads and parses",
            ["entity", "result"],
        )
        _prom_parser_failure_counter = Counter(
            "cccontext_parser_failures_total",
            "Count of transcript lines that failed to parse",
            ["parser"],
        )
        _prom_tokens_counter = Counter(
            "cccontext_tokens_total",
            "Token totals observed in session transcripts",
            ["model", "direction"],
        )
        _prom_cost_counter = Counter(
            "cccontext_cost_usd_total",
            "Estimated cost observed in session transcripts",
            ["model"],
        )
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _ingestion_counter, _ingestion_latency_hist, _parser_failure_counter
    global _tokens_counter, _cost_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CCCONTEXT_OTEL_ENABLED=false)")
        if config.PROM_PORT > 0:
            _start_prometheus()
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
    service_name = config.OTEL_SERVICE_NAME or "cccontext"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "cccontext",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("cccontext")

    _ingestion_counter = meter.create_counter(
        "cccontext_ingestion_events_total",
        unit="1",
        description="Count of session read operations",
    )
    _ingestion_latency_hist = meter.create_histogram(
        "cccontext_ingestion_latency_ms",
        unit="ms",
        description="Latency for session reads and parses",
    )
    _parser_failure_counter = meter.create_counter(
        "cccontext_parser_failures_total",
        unit="1",
        description="Count of transcript lines that failed to parse",
    )
    _tokens_counter = meter.create_counter(
        "cccontext_tokens_total",
        unit="1",
        description="Token totals observed in session transcripts",
    )
    _cost_counter = meter.create_counter(
        "cccontext_cost_usd_total",
        unit="usd",
        description="Estimated cost observed in session transcripts",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("cccontext")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

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
        logger.debug("FastAPI uninstrumentation failed", exc_info=True)
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception:
            logger.debug("Telemetry provider shutdown failed", exc_info=True)
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


def record_ingestion(entity: str, result: str, duration_ms: float, *, session_id: str = "") -> None:
    labels = {
        "entity": _clean(entity),
        "result": _clean(result),
        "session_id": _clean(session_id),
    }
    if _enabled and _ingestion_counter is not None:
        _ingestion_counter.add(1, labels)
    if _enabled and _ingestion_latency_hist is not None:
        _ingestion_latency_hist.record(max(0.0, float(duration_ms)), labels)
    # Session ids are unbounded, so Prometheus only gets the low-cardinality labels.
    if _prom_enabled and _prom_ingestion_counter is not None:
        _prom_ingestion_counter.labels(entity=_clean(entity), result=_clean(result)).inc()
    if _prom_enabled and _prom_ingestion_latency_hist is not None:
        _prom_ingestion_latency_hist.labels(entity=_clean(entity), result=_clean(result)).observe(
            max(0.0, float(duration_ms))
        )


def record_parser_failure(parser: str, *, session_id: str = "", count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {
        "parser": _clean(parser),
        "session_id": _clean(session_id),
    }
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(safe_count, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(parser=_clean(parser)).inc(safe_count)


def record_token_cost(
    *,
    model: str,
    token_input: int,
    token_output: int,
    cost_usd: float,
) -> None:
    labels_base = {"model": _clean(model)}
    in_tokens = max(0, int(token_input))
    out_tokens = max(0, int(token_output))
    if _enabled and _tokens_counter is not None:
        if in_tokens > 0:
            _tokens_counter.add(in_tokens, {**labels_base, "direction": "input"})
        if out_tokens > 0:
            _tokens_counter.add(out_tokens, {**labels_base, "direction": "output"})
    if _enabled and _cost_counter is not None and cost_usd > 0:
        _cost_counter.add(float(cost_usd), labels_base)

    if _prom_enabled and _prom_tokens_counter is not None:
        if in_tokens > 0:
            _prom_tokens_counter.labels(**labels_base, direction="input").inc(in_tokens)
        if out_tokens > 0:
            _prom_tokens_counter.labels(**labels_base, direction="output").inc(out_tokens)
    if _prom_enabled and _prom_cost_counter is not None and cost_usd > 0:
        _prom_cost_counter.labels(**labels_base).inc(float(cost_usd))
