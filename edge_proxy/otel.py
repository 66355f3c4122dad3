from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator

from .config import settings
from .observability import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

_OTEL_READY = False
_OTEL_SETUP_ATTEMPTED = False
_TRACER: Any = None
_HTTP_COUNTER: Any = None
_HTTP_LATENCY_MS: Any = None
_UPSTREAM_LATENCY_MS: Any = None
_ADMISSION_REJECTED: Any = None


def otel_enabled() -> bool:
    return bool(settings.otel_enabled) and _OTEL_READY


def _resolve_trace_exporter_mode() -> str:
    mode = settings.otel_traces_exporter or "auto"
    if mode != "auto":
        return mode
    if settings.otel_exporter_otlp_endpoint:
        return "otlp"
    return "none"


def setup_otel(app: Any) -> bool:
    """Instrument the ASGI app when OTEL_ENABLED is set.

    The opentelemetry packages are an optional extra; when they are missing
    the proxy runs without tracing and every record_* hook is a no-op.
    """

    global _OTEL_READY, _OTEL_SETUP_ATTEMPTED, _TRACER
    global _HTTP_COUNTER, _HTTP_LATENCY_MS, _UPSTREAM_LATENCY_MS, _ADMISSION_REJECTED
    if _OTEL_SETUP_ATTEMPTED:
        return _OTEL_READY
    _OTEL_SETUP_ATTEMPTED = True

    if not settings.otel_enabled:
        return False

    try:
        from opentelemetry import metrics as otel_metrics  # type: ignore[import-not-found]
        from opentelemetry import trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader  # type: ignore[import-not-found]
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]
        from opentelemetry.sdk.trace import TracerProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.trace.export import BatchSpanProcessor  # type: ignore[import-not-found]
    except ImportError as e:  # pragma: no cover
        logger.warning("OTEL enabled but dependencies missing; tracing disabled. error=%s", e)
        return False

    resource = Resource.create(
        {"service.name": settings.otel_service_name, "service.version": settings.version}
    )
    provider = TracerProvider(resource=resource)

    endpoint = settings.otel_exporter_otlp_endpoint
    mode = _resolve_trace_exporter_mode()
    if mode == "otlp" and endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (  # type: ignore[import-not-found]
                OTLPSpanExporter,
            )

            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        except Exception as e:  # pragma: no cover
            logger.warning("OTEL OTLP trace exporter init failed; spans will stay local. error=%s", e)
    elif mode == "otlp":
        logger.warning("OTEL_TRACES_EXPORTER=otlp but OTEL_EXPORTER_OTLP_ENDPOINT is unset; spans stay local")
    else:
        logger.info("OTEL tracing enabled without exporter; spans stay local to the process")

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _TRACER = trace.get_tracer("edge_proxy")

    # Metrics are best-effort; tracing stays on if this part fails.
    try:
        readers: list[Any] = []
        if endpoint:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import (  # type: ignore[import-not-found]
                OTLPMetricExporter,
            )

            readers.append(PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint)))
        meter_provider = MeterProvider(resource=resource, metric_readers=readers)
        otel_metrics.set_meter_provider(meter_provider)
        meter = otel_metrics.get_meter("edge_proxy")
        _HTTP_COUNTER = meter.create_counter(
            name="edge_proxy.http.server.requests",
            unit="1",
            description="Inbound requests handled by the proxy",
        )
        _HTTP_LATENCY_MS = meter.create_histogram(
            name="edge_proxy.http.server.duration_ms",
            unit="ms",
            description="Inbound request latency in milliseconds",
        )
        _UPSTREAM_LATENCY_MS = meter.create_histogram(
            name="edge_proxy.upstream.duration_ms",
            unit="ms",
            description="Time until upstream response headers arrive",
        )
        _ADMISSION_REJECTED = meter.create_counter(
            name="edge_proxy.admission.rejected",
            unit="1",
            description="Requests rejected by the per-client rate limiter",
        )
    except Exception as e:  # pragma: no cover
        logger.warning("OTEL metric setup failed; continuing with tracing only. error=%s", e)

    logger.info("OTEL ready (exporter=%s, pid=%s)", mode, os.getpid())
    _OTEL_READY = True
    return True


@contextmanager
def span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """Tracing span when OTEL is live, otherwise a no-op."""

    if not _OTEL_READY or _TRACER is None:
        yield None
        return

    with _TRACER.start_as_current_span(name) as s:
        for k, v in _attrs(attributes).items():
            s.set_attribute(k, v)
        yield s


def _attrs(attrs: dict[str, Any] | None) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if not attrs:
        return out
    for k, v in attrs.items():
        if v is None:
            continue
        out[str(k)] = v if isinstance(v, (str, bool, int, float)) else str(v)
    return out


def record_http_request_metric(*, method: str, path: str, status_code: int, latency_ms: float) -> None:
    if not _OTEL_READY:
        return
    attrs = _attrs({"http.method": method, "http.route": path, "http.status_code": int(status_code)})
    if _HTTP_COUNTER is not None:
        _HTTP_COUNTER.add(1, attributes=attrs)
    if _HTTP_LATENCY_MS is not None:
        _HTTP_LATENCY_MS.record(float(latency_ms), attributes=attrs)


def record_upstream_metric(*, latency_ms: float, status_code: int | None, outcome: str) -> None:
    if not _OTEL_READY or _UPSTREAM_LATENCY_MS is None:
        return
    _UPSTREAM_LATENCY_MS.record(
        float(latency_ms),
        attributes=_attrs({"upstream.status_code": status_code, "upstream.outcome": outcome}),
    )


def record_admission_rejected_metric() -> None:
    if not _OTEL_READY or _ADMISSION_REJECTED is None:
        return
    _ADMISSION_REJECTED.add(1, attributes={})
