"""Error taxonomy for the telemetry bootstrap."""


class TelemetryError(Exception):
    """Base class for all bootstrap errors."""


class InvalidConfigError(TelemetryError, ValueError):
    """A configuration value is missing, malformed or unrecognized.

    Raised before any exporter is built or instrumentation is installed.
    """


class LifecycleError(TelemetryError, RuntimeError):
    """An operation was called in a lifecycle state that does not allow it."""


class AlreadyInitializedError(LifecycleError):
    """initialize() was called after the SDK had already been started."""


class AlreadyShutdownError(AlreadyInitializedError):
    """An operation was called after the SDK was stopped."""


class ExporterUnreachableError(TelemetryError):
    """An export attempt failed. Logged by the export task, never raised to callers."""

    def __init__(self, exporter: str, cause: BaseException):
        self.exporter = exporter
        self.cause = cause
        super().__init__(f"{exporter} export failed: {cause}")
