"""
Exporter construction and failure isolation.

Exporter kinds map to constructors through plain lookup tables. Every
exporter handed to the SDK is wrapped so that a failing collector only ever
produces a logged warning inside the export thread.
"""

import logging
import threading
from typing import Callable, Dict, Optional, Sequence, Tuple

from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricExporter,
    MetricExportResult,
    MetricsData,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
    SpanExportResult,
    SpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from otelboot.config import MetricExporterKind, TelemetryConfig, TraceExporterKind, kind_name
from otelboot.errors import ExporterUnreachableError, InvalidConfigError

logger = logging.getLogger(__name__)

SpanExporterFactory = Callable[[TelemetryConfig], Optional[SpanExporter]]
MetricExporterFactory = Callable[[TelemetryConfig], Optional[MetricExporter]]


def _otlp_kwargs(config: TelemetryConfig) -> Dict:
    kwargs = {
        "endpoint": config.otlp_endpoint,
        "insecure": config.otlp_insecure,
        "timeout": config.otlp_timeout_seconds,
    }
    if config.otlp_headers:
        kwargs["headers"] = dict(config.otlp_headers)
    return kwargs


TRACE_EXPORTERS: Dict[TraceExporterKind, SpanExporterFactory] = {
    TraceExporterKind.OTLP_GRPC: lambda config: OTLPSpanExporter(**_otlp_kwargs(config)),
    TraceExporterKind.CONSOLE: lambda config: ConsoleSpanExporter(),
    TraceExporterKind.IN_MEMORY: lambda config: InMemorySpanExporter(),
    TraceExporterKind.NONE: lambda config: None,
}

METRIC_EXPORTERS: Dict[MetricExporterKind, MetricExporterFactory] = {
    MetricExporterKind.OTLP_GRPC: lambda config: OTLPMetricExporter(**_otlp_kwargs(config)),
    MetricExporterKind.CONSOLE: lambda config: ConsoleMetricExporter(),
    MetricExporterKind.NONE: lambda config: None,
}

# Network exporters batch in a background thread; local ones write through
BATCHED_TRACE_EXPORTERS = frozenset({TraceExporterKind.OTLP_GRPC})


def resolve_trace_exporter(kind) -> SpanExporterFactory:
    """Look up the constructor for a trace exporter kind.

    Raises:
        InvalidConfigError: If the kind is not registered
    """
    factory = TRACE_EXPORTERS.get(kind)
    if factory is None:
        valid = ", ".join(k.value for k in TRACE_EXPORTERS)
        raise InvalidConfigError(f"Unknown trace exporter '{kind}'. Valid options are: {valid}")
    return factory


def resolve_metric_exporter(kind) -> MetricExporterFactory:
    """Look up the constructor for a metric exporter kind.

    Raises:
        InvalidConfigError: If the kind is not registered
    """
    factory = METRIC_EXPORTERS.get(kind)
    if factory is None:
        valid = ", ".join(k.value for k in METRIC_EXPORTERS)
        raise InvalidConfigError(f"Unknown metric exporter '{kind}'. Valid options are: {valid}")
    return factory


class _ExportStats:
    """Attempt/failure counters shared by both isolating exporters."""

    def __init__(self, name: str):
        self.name = name
        self.export_attempts = 0
        self.export_failures = 0
        self._stats_lock = threading.Lock()

    def _record_attempt(self) -> None:
        with self._stats_lock:
            self.export_attempts += 1

    def _record_failure(self, cause: BaseException) -> None:
        with self._stats_lock:
            self.export_failures += 1
        error = ExporterUnreachableError(self.name, cause)
        logger.warning(f"{error}; dropping batch, next cycle will retry")


class IsolatedSpanExporter(_ExportStats, SpanExporter):
    """SpanExporter wrapper that never lets an export error escape."""

    def __init__(self, exporter: SpanExporter, name: str):
        _ExportStats.__init__(self, name)
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        self._record_attempt()
        try:
            result = self.exporter.export(spans)
        except Exception as e:
            self._record_failure(e)
            return SpanExportResult.FAILURE
        if result is not SpanExportResult.SUCCESS:
            self._record_failure(RuntimeError(f"exporter returned {result.name}"))
        return result

    def force_flush(self, timeout_millis: int = 30_000) -> bool:
        try:
            return self.exporter.force_flush(timeout_millis)
        except Exception as e:
            logger.warning(f"{self.name} span exporter flush failed: {e}")
            return False

    def shutdown(self) -> None:
        try:
            self.exporter.shutdown()
        except Exception as e:
            logger.warning(f"{self.name} span exporter shutdown failed: {e}")


class IsolatedMetricExporter(_ExportStats, MetricExporter):
    """MetricExporter wrapper that never lets an export error escape."""

    def __init__(self, exporter: MetricExporter, name: str):
        _ExportStats.__init__(self, name)
        MetricExporter.__init__(
            self,
            preferred_temporality=exporter._preferred_temporality,
            preferred_aggregation=exporter._preferred_aggregation,
        )
        self.exporter = exporter

    def export(
        self,
        metrics_data: MetricsData,
        timeout_millis: float = 10_000,
        **kwargs,
    ) -> MetricExportResult:
        self._record_attempt()
        try:
            result = self.exporter.export(metrics_data, timeout_millis=timeout_millis, **kwargs)
        except Exception as e:
            self._record_failure(e)
            return MetricExportResult.FAILURE
        if result is not MetricExportResult.SUCCESS:
            self._record_failure(RuntimeError(f"exporter returned {result.name}"))
        return result

    def force_flush(self, timeout_millis: float = 10_000) -> bool:
        try:
            return self.exporter.force_flush(timeout_millis=timeout_millis)
        except Exception as e:
            logger.warning(f"{self.name} metric exporter flush failed: {e}")
            return False

    def shutdown(self, timeout_millis: float = 30_000, **kwargs) -> None:
        try:
            self.exporter.shutdown(timeout_millis=timeout_millis, **kwargs)
        except Exception as e:
            logger.warning(f"{self.name} metric exporter shutdown failed: {e}")


def build_span_processor(
    config: TelemetryConfig, factory: SpanExporterFactory
) -> Tuple[Optional[SpanProcessor], Optional[IsolatedSpanExporter]]:
    """Create the span exporter for `config` and wrap it in a processor.

    Returns (None, None) when tracing export is disabled.
    """
    exporter = factory(config)
    if exporter is None:
        return None, None

    isolated = IsolatedSpanExporter(exporter, f"trace/{kind_name(config.trace_exporter)}")
    if config.trace_exporter in BATCHED_TRACE_EXPORTERS:
        return BatchSpanProcessor(isolated), isolated
    return SimpleSpanProcessor(isolated), isolated


def build_metric_reader(
    config: TelemetryConfig, factory: MetricExporterFactory
) -> Tuple[Optional[PeriodicExportingMetricReader], Optional[IsolatedMetricExporter]]:
    """Create the metric exporter for `config` and its periodic reader.

    The reader starts its export thread immediately; cycles are no-ops until
    it is attached to a MeterProvider.
    Returns (None, None) when metric export is disabled.
    """
    exporter = factory(config)
    if exporter is None:
        return None, None

    isolated = IsolatedMetricExporter(exporter, f"metric/{kind_name(config.metric_exporter)}")
    reader = PeriodicExportingMetricReader(
        isolated,
        export_interval_millis=config.metric_export_interval_millis,
        export_timeout_millis=config.metric_export_timeout_millis,
    )
    return reader, isolated
