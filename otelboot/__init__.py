"""
Process-local OpenTelemetry bootstrap.

Call `initialize()` once, first thing at process startup. Traces and
metrics are exported as configured through `TelemetryConfig` or the
standard OTEL_* environment variables, and the SDK is flushed and closed
on `shutdown()` or at interpreter exit.
"""

from otelboot.bootstrap import (
    LifecycleState,
    SdkHandle,
    TelemetryBootstrap,
    get_handle,
    get_state,
    initialize,
    reset,
    shutdown,
)
from otelboot.config import (
    MetricExporterKind,
    TelemetryConfig,
    TraceExporterKind,
    load_config,
)
from otelboot.errors import (
    AlreadyInitializedError,
    AlreadyShutdownError,
    ExporterUnreachableError,
    InvalidConfigError,
    LifecycleError,
    TelemetryError,
)

__all__ = [
    "LifecycleState",
    "SdkHandle",
    "TelemetryBootstrap",
    "get_handle",
    "get_state",
    "initialize",
    "reset",
    "shutdown",
    "MetricExporterKind",
    "TelemetryConfig",
    "TraceExporterKind",
    "load_config",
    "AlreadyInitializedError",
    "AlreadyShutdownError",
    "ExporterUnreachableError",
    "InvalidConfigError",
    "LifecycleError",
    "TelemetryError",
]
