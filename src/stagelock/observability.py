from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)

METRICS_EXPORTERS = ("none", "otlp", "prometheus")

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")


def metric_name(name: str) -> str:
    cleaned = _INVALID_NAME_CHARS.sub("_", name).strip("_")
    return f"stagelock.{cleaned}" if cleaned else "stagelock.unnamed"


class Instrumentation:
    """Sink for lease, stage and reconciliation metrics. This base drops everything."""

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        del name, attrs
        yield

    def shutdown(self) -> None:
        return None


class NoopInstrumentation(Instrumentation):
    pass


def _build_metric_readers(
    metrics_exporter: str, otlp_endpoint: str | None, prometheus_port: int
) -> list[Any]:
    if metrics_exporter == "otlp":
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

        exporter = OTLPMetricExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPMetricExporter()
        return [PeriodicExportingMetricReader(exporter)]
    if metrics_exporter == "prometheus":
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        from prometheus_client import start_http_server

        start_http_server(prometheus_port)
        return [PrometheusMetricReader()]
    return []


class OTelInstrumentation(Instrumentation):
    """OpenTelemetry SDK sink; spans are exported only with the OTLP exporter."""

    def __init__(
        self,
        *,
        service_name: str,
        metrics_exporter: str,
        otlp_endpoint: str | None,
        prometheus_port: int,
    ) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider

        resource = Resource.create({"service.name": service_name})
        self._tracer_provider = TracerProvider(resource=resource)
        if metrics_exporter == "otlp":
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            from opentelemetry.sdk.trace.export import BatchSpanProcessor

            span_exporter = OTLPSpanExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPSpanExporter()
            self._tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        self._meter_provider = MeterProvider(
            resource=resource,
            metric_readers=_build_metric_readers(metrics_exporter, otlp_endpoint, prometheus_port),
        )
        trace.set_tracer_provider(self._tracer_provider)
        metrics.set_meter_provider(self._meter_provider)
        self._tracer = trace.get_tracer(service_name)
        self._meter = metrics.get_meter(service_name)
        self._instruments: dict[tuple[str, str], Any] = {}
        self._instruments_lock = threading.Lock()

    def _instrument(self, kind: str, name: str) -> Any:
        key = (kind, metric_name(name))
        with self._instruments_lock:
            instrument = self._instruments.get(key)
            if instrument is None:
                create = self._meter.create_counter if kind == "counter" else self._meter.create_histogram
                instrument = create(key[1])
                self._instruments[key] = instrument
        return instrument

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("counter", name).add(value, attrs or {})

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("histogram", name).record(value, attrs or {})

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(name, attributes=attrs or None):
            yield

    def shutdown(self) -> None:
        self._meter_provider.shutdown()
        self._tracer_provider.shutdown()


_LOCK = threading.Lock()
_ACTIVE: Instrumentation = NoopInstrumentation()


def configure_instrumentation(
    *,
    enabled: bool,
    service_name: str = "stagelock",
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
    prometheus_port: int = 9464,
) -> Instrumentation:
    """Install the process-wide sink; an SDK setup failure leaves the noop sink in place."""
    global _ACTIVE
    with _LOCK:
        if not enabled:
            _ACTIVE = NoopInstrumentation()
        elif not isinstance(_ACTIVE, OTelInstrumentation):
            try:
                _ACTIVE = OTelInstrumentation(
                    service_name=service_name,
                    metrics_exporter=metrics_exporter,
                    otlp_endpoint=otlp_endpoint,
                    prometheus_port=prometheus_port,
                )
            except Exception:  # noqa: BLE001
                logger.exception(
                    "observability_setup_failed_falling_back_to_noop",
                    extra={"extra": {"metrics_exporter": metrics_exporter}},
                )
                _ACTIVE = NoopInstrumentation()
        return _ACTIVE


def get_instrumentation() -> Instrumentation:
    return _ACTIVE


def shutdown_instrumentation() -> None:
    global _ACTIVE
    with _LOCK:
        _ACTIVE.shutdown()
        _ACTIVE = NoopInstrumentation()
