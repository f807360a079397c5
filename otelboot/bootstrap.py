"""
Telemetry bootstrap lifecycle.

`TelemetryBootstrap` turns a `TelemetryConfig` into a running OpenTelemetry
SDK exactly once per process and owns its teardown. The module keeps one
process-wide instance behind `initialize()` / `shutdown()`; `reset()` swaps
in a fresh one so tests can start and stop the SDK repeatedly.

State machine:

    UNINITIALIZED -> INITIALIZING -> RUNNING -> SHUTTING_DOWN -> STOPPED
"""

import atexit
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional, Union

from opentelemetry import metrics, trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.instrumentation.instrumentor import BaseInstrumentor
from opentelemetry.metrics import _internal as metrics_internal
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.util._once import Once

from otelboot.config import TelemetryConfig, kind_name, load_config
from otelboot.errors import AlreadyInitializedError, AlreadyShutdownError, InvalidConfigError
from otelboot.exporters import (
    IsolatedMetricExporter,
    IsolatedSpanExporter,
    MetricExporterFactory,
    SpanExporterFactory,
    build_metric_reader,
    build_span_processor,
    resolve_metric_exporter,
    resolve_trace_exporter,
)
from otelboot.instrumentations import (
    activate_instrumentations,
    deactivate_instrumentations,
    resolve_instrumentations,
)

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Lifecycle of the process-wide telemetry SDK."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class _StartPlan:
    """Everything resolved from a config before any side effect happens."""

    trace_exporter: SpanExporterFactory
    metric_exporter: MetricExporterFactory
    instrumentations: List[str]


class SdkHandle:
    """A started telemetry SDK.

    Holds the providers, the exporters and the activated instrumentors.
    Created by TelemetryBootstrap.initialize(); callers only use it to get
    tracers and meters, to flush, and to shut down.
    """

    def __init__(
        self,
        bootstrap: "TelemetryBootstrap",
        config: TelemetryConfig,
        resource: Resource,
        tracer_provider: TracerProvider,
        meter_provider: MeterProvider,
        span_exporter: Optional[IsolatedSpanExporter],
        metric_exporter: Optional[IsolatedMetricExporter],
        instrumentors: List[BaseInstrumentor],
    ):
        self._bootstrap = bootstrap
        self.config = config
        self.resource = resource
        self.tracer_provider = tracer_provider
        self.meter_provider = meter_provider
        self.span_exporter = span_exporter
        self.metric_exporter = metric_exporter
        self.instrumentors = instrumentors
        self._abort_lock = threading.Lock()
        self._span_export_aborted = False

    @property
    def state(self) -> LifecycleState:
        return self._bootstrap.state

    def _ensure_running(self) -> None:
        if self.state is not LifecycleState.RUNNING:
            raise AlreadyShutdownError(f"Telemetry SDK is {self.state.value}")

    def get_tracer(self, name: str, version: Optional[str] = None) -> trace.Tracer:
        """Get a tracer bound to this handle's provider."""
        self._ensure_running()
        return self.tracer_provider.get_tracer(name, version)

    def get_meter(self, name: str, version: Optional[str] = None) -> metrics.Meter:
        """Get a meter bound to this handle's provider."""
        self._ensure_running()
        return self.meter_provider.get_meter(name, version)

    def force_flush(self, timeout_millis: Optional[int] = None) -> bool:
        """Export everything buffered so far.

        Returns:
            True if both providers flushed within the timeout
        """
        self._ensure_running()
        if timeout_millis is None:
            timeout_millis = self.config.shutdown_grace_millis
        traces_flushed = self.tracer_provider.force_flush(timeout_millis)
        metrics_flushed = self.meter_provider.force_flush(timeout_millis)
        return bool(traces_flushed and metrics_flushed)

    def shutdown(self) -> None:
        """Flush and release everything. Idempotent."""
        self._bootstrap.shutdown()

    def _abort_span_export(self) -> None:
        """Shut the span exporter down so a pending export gives up."""
        with self._abort_lock:
            if self._span_export_aborted or self.span_exporter is None:
                return
            self._span_export_aborted = True
        logger.warning(
            f"Spans not flushed within {self.config.shutdown_grace_millis}ms, dropping remainder"
        )
        self.span_exporter.shutdown()

    def _close(self) -> None:
        """Tear down in dependency order; errors are logged, never raised."""
        grace_millis = self.config.shutdown_grace_millis
        deadline = time.monotonic() + grace_millis / 1000

        deactivate_instrumentations(self.instrumentors)

        # Exporters can sit in their retry loop well past the flush timeout
        watchdog = threading.Timer(grace_millis / 1000, self._abort_span_export)
        watchdog.daemon = True
        watchdog.start()
        try:
            try:
                flushed = self.tracer_provider.force_flush(grace_millis)
            finally:
                watchdog.cancel()
            if not flushed:
                self._abort_span_export()
            self.tracer_provider.shutdown()
        except Exception as e:
            logger.warning(f"Error shutting down tracer provider: {e}")

        # Stops the periodic export timer, then runs one final collection
        remaining_millis = max(int((deadline - time.monotonic()) * 1000), 1)
        try:
            self.meter_provider.shutdown(timeout_millis=remaining_millis)
        except Exception as e:
            logger.warning(f"Error shutting down meter provider: {e}")


class TelemetryBootstrap:
    """Owns the one-time start and the teardown of the telemetry SDK."""

    def __init__(self):
        self._lock = threading.RLock()
        self._state = LifecycleState.UNINITIALIZED
        self._handle: Optional[SdkHandle] = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def handle(self) -> Optional[SdkHandle]:
        return self._handle

    def initialize(self, config: Union[TelemetryConfig, Mapping[str, Any]]) -> SdkHandle:
        """Start the telemetry SDK.

        Must run before any other module does observable work: code that ran
        earlier is not seen by the instrumentation.

        Args:
            config: A TelemetryConfig, or a mapping of its field values

        Returns:
            The running SdkHandle

        Raises:
            AlreadyInitializedError: If called more than once
            AlreadyShutdownError: If called after shutdown
            InvalidConfigError: If an exporter kind or instrumentation is unknown
        """
        with self._lock:
            if self._state is LifecycleState.STOPPED:
                raise AlreadyShutdownError("Telemetry SDK was already shut down")
            if self._state is not LifecycleState.UNINITIALIZED:
                raise AlreadyInitializedError(f"Telemetry SDK is already {self._state.value}")

            if not isinstance(config, TelemetryConfig):
                config = load_config(**config)
            plan = self._resolve(config)

            self._state = LifecycleState.INITIALIZING
            try:
                handle = self._start(config, plan)
            except Exception:
                self._state = LifecycleState.UNINITIALIZED
                raise

            self._handle = handle
            self._state = LifecycleState.RUNNING
            atexit.register(self._shutdown_at_exit)

            logger.info(
                f"Telemetry initialized: traces={kind_name(config.trace_exporter)}, "
                f"metrics={kind_name(config.metric_exporter)} "
                f"every {config.metric_export_interval_millis}ms, "
                f"instrumentations={plan.instrumentations}"
            )
            return handle

    def shutdown(self) -> None:
        """Flush buffered telemetry and release exporters.

        Safe to call any number of times, including from an atexit hook.
        """
        with self._lock:
            if self._state in (LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED):
                return
            if self._state is LifecycleState.UNINITIALIZED:
                logger.debug("Telemetry shutdown requested before initialization, ignoring")
                return

            self._state = LifecycleState.SHUTTING_DOWN
            logger.info("Shutting down telemetry")
            try:
                self._handle._close()
            finally:
                atexit.unregister(self._shutdown_at_exit)
                self._state = LifecycleState.STOPPED
            logger.info("Telemetry stopped")

    def _shutdown_at_exit(self) -> None:
        try:
            self.shutdown()
        except Exception as e:
            logger.warning(f"Error shutting down telemetry at exit: {e}")

    @staticmethod
    def _resolve(config: TelemetryConfig) -> _StartPlan:
        if config.metric_export_interval_millis <= 0:
            raise InvalidConfigError(
                f"metric_export_interval_millis must be positive, "
                f"got {config.metric_export_interval_millis}"
            )
        return _StartPlan(
            trace_exporter=resolve_trace_exporter(config.trace_exporter),
            metric_exporter=resolve_metric_exporter(config.metric_exporter),
            instrumentations=resolve_instrumentations(config.instrumentations),
        )

    def _start(self, config: TelemetryConfig, plan: _StartPlan) -> SdkHandle:
        resource = config.to_resource()
        tracer_provider = TracerProvider(resource=resource, shutdown_on_exit=False)
        meter_provider = None
        try:
            span_processor, span_exporter = build_span_processor(config, plan.trace_exporter)
            if span_processor is not None:
                tracer_provider.add_span_processor(span_processor)

            metric_reader, metric_exporter = build_metric_reader(config, plan.metric_exporter)
            meter_provider = MeterProvider(
                resource=resource,
                metric_readers=[metric_reader] if metric_reader is not None else [],
                shutdown_on_exit=False,
            )

            instrumentors = activate_instrumentations(
                plan.instrumentations, tracer_provider, meter_provider
            )
        except Exception:
            tracer_provider.shutdown()
            if meter_provider is not None:
                meter_provider.shutdown()
            raise

        # Globals go last: they cannot be unset if a later step failed
        set_global_textmap(
            CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])
        )
        trace.set_tracer_provider(tracer_provider)
        metrics.set_meter_provider(meter_provider)
        if trace.get_tracer_provider() is not tracer_provider:
            logger.warning("Another global tracer provider was already set; library spans bypass this SDK")
        if metrics.get_meter_provider() is not meter_provider:
            logger.warning("Another global meter provider was already set; library metrics bypass this SDK")

        return SdkHandle(
            bootstrap=self,
            config=config,
            resource=resource,
            tracer_provider=tracer_provider,
            meter_provider=meter_provider,
            span_exporter=span_exporter,
            metric_exporter=metric_exporter,
            instrumentors=instrumentors,
        )


# Process-global bootstrap
_bootstrap = TelemetryBootstrap()
_bootstrap_lock = threading.Lock()


def initialize(config: Union[TelemetryConfig, Mapping[str, Any], None] = None) -> SdkHandle:
    """Start the process-wide telemetry SDK.

    Should be called once, first thing at process startup. With no
    argument the config is read from the OTEL_* environment.
    """
    if config is None:
        config = load_config()
    return _bootstrap.initialize(config)


def shutdown(handle: Optional[SdkHandle] = None) -> None:
    """Shut down the given handle, or the process-wide SDK. Idempotent."""
    if handle is not None:
        handle.shutdown()
    else:
        _bootstrap.shutdown()


def get_handle() -> Optional[SdkHandle]:
    """Return the running handle, if any."""
    return _bootstrap.handle


def get_state() -> LifecycleState:
    return _bootstrap.state


def _clear_global_providers() -> None:
    # The API only lets each global provider be set once per process
    trace._TRACER_PROVIDER_SET_ONCE = Once()
    trace._TRACER_PROVIDER = None
    trace._PROXY_TRACER_PROVIDER = trace.ProxyTracerProvider()
    metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    metrics_internal._METER_PROVIDER = None
    metrics_internal._PROXY_METER_PROVIDER = metrics_internal._ProxyMeterProvider()


def reset() -> None:
    """Shut down the process-wide SDK and start over from UNINITIALIZED.

    Also clears the OpenTelemetry global tracer and meter providers so the
    next initialize() installs its own. Intended for tests.
    """
    global _bootstrap
    with _bootstrap_lock:
        _bootstrap.shutdown()
        _bootstrap = TelemetryBootstrap()
        _clear_global_providers()
