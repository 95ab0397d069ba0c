from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from .config import settings

logger = logging.getLogger(__name__)

_OTEL_READY = False
_OTEL_SETUP_ATTEMPTED = False
_TRACER: Any = None
_METER_PROVIDER: Any = None
_TRACER_PROVIDER: Any = None
_STORE_REQUESTS: Any = None
_DELETED_WINDOWS: Any = None
_OUTCOMES: Any = None


def setup_otel() -> bool:
    """Configure tracing and metrics when OTEL_ENABLED is set.

    Design goals:
    - near-zero overhead when OTEL is disabled
    - no hard dependency on otel packages (install the `otel` extra)
    - OTLP/HTTP export when an endpoint is configured, local-only spans otherwise
    """

    global _OTEL_READY, _OTEL_SETUP_ATTEMPTED, _TRACER, _METER_PROVIDER, _TRACER_PROVIDER
    global _STORE_REQUESTS, _DELETED_WINDOWS, _OUTCOMES
    if _OTEL_SETUP_ATTEMPTED:
        return _OTEL_READY
    _OTEL_SETUP_ATTEMPTED = True

    if not settings.otel_enabled:
        return False

    try:
        from opentelemetry import metrics as otel_metrics  # type: ignore[import-not-found]
        from opentelemetry import trace
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader  # type: ignore[import-not-found]
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]
        from opentelemetry.sdk.trace import TracerProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.trace.export import BatchSpanProcessor  # type: ignore[import-not-found]
    except Exception as e:  # pragma: no cover
        logger.warning("OTEL enabled but dependencies missing; tracing disabled. error=%s", e)
        return False

    resource = Resource.create({"service.name": settings.otel_service_name})
    provider = TracerProvider(resource=resource)

    endpoint = settings.otel_exporter_otlp_endpoint
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (  # type: ignore[import-not-found]
                OTLPSpanExporter,
            )

            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        except Exception as e:  # pragma: no cover
            logger.warning("OTEL OTLP trace exporter init failed; spans will stay local. error=%s", e)
    else:
        logger.info("OTEL tracing enabled without exporter; spans will stay local to process")

    trace.set_tracer_provider(provider)
    _TRACER_PROVIDER = provider
    _TRACER = trace.get_tracer("tsdb_expire")

    # Metrics are best-effort; tracing should still work if metric setup fails.
    try:
        metric_readers: list[Any] = []
        if endpoint:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import (  # type: ignore[import-not-found]
                OTLPMetricExporter,
            )

            metric_readers.append(PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint)))
        meter_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
        otel_metrics.set_meter_provider(meter_provider)
        _METER_PROVIDER = meter_provider
        meter = otel_metrics.get_meter("tsdb_expire")
        _STORE_REQUESTS = meter.create_counter(
            name="tsdb_expire.store.requests",
            unit="1",
            description="Query/delete/suggest calls sent to the time-series store",
        )
        _DELETED_WINDOWS = meter.create_counter(
            name="tsdb_expire.delete.windows",
            unit="1",
            description="Sub-windows deleted from the store",
        )
        _OUTCOMES = meter.create_counter(
            name="tsdb_expire.decisions",
            unit="1",
            description="Retention outcomes per metric and rule",
        )
    except Exception as e:  # pragma: no cover
        logger.warning("OTEL metric setup failed; continuing with tracing only. error=%s", e)

    _OTEL_READY = True
    return True


def shutdown_otel() -> None:
    """Flush exporters; a short-lived CLI process exits before periodic export fires."""
    if not _OTEL_READY:
        return
    for provider in (_TRACER_PROVIDER, _METER_PROVIDER):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as e:  # pragma: no cover
            logger.warning("OTEL shutdown failed. error=%s", e)


@contextmanager
def span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """Start a tracing span when OTEL is active; otherwise no-op."""

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


def record_store_request(*, kind: str, ok: bool) -> None:
    if not _OTEL_READY or _STORE_REQUESTS is None:
        return
    _STORE_REQUESTS.add(1, attributes=_attrs({"store.request": kind, "store.ok": bool(ok)}))


def record_deleted_window(*, metric: str, mode: str) -> None:
    if not _OTEL_READY or _DELETED_WINDOWS is None:
        return
    _DELETED_WINDOWS.add(1, attributes=_attrs({"tsdb.metric": metric, "delete.mode": mode}))


def record_outcome(*, rule: str, status: str) -> None:
    if not _OTEL_READY or _OUTCOMES is None:
        return
    _OUTCOMES.add(1, attributes=_attrs({"retention.rule": rule, "retention.status": status}))
