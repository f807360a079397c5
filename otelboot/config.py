"""
Telemetry configuration.

`TelemetryConfig` is a frozen pydantic settings object. Values come from
keyword arguments first, then from the standard OTEL_* environment
variables, then from the defaults below.
"""

import json
import logging
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, Optional
from urllib.parse import unquote

from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, SettingsError

from otelboot.errors import InvalidConfigError

logger = logging.getLogger(__name__)

AUTO_INSTRUMENTATION = "auto"


class TraceExporterKind(str, Enum):
    """Transport used to emit trace data."""

    OTLP_GRPC = "otlp-grpc"
    CONSOLE = "console"
    IN_MEMORY = "in-memory"
    NONE = "none"


class MetricExporterKind(str, Enum):
    """Transport used to emit metric data."""

    OTLP_GRPC = "otlp-grpc"
    CONSOLE = "console"
    NONE = "none"


def parse_key_value_pairs(value: str) -> Dict[str, str]:
    """Parse the OTEL `key1=value1,key2=value2` list format.

    Values may be percent-encoded. Duplicate keys are rejected.
    """
    pairs: Dict[str, str] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ValueError(f"Expected key=value, got '{item}'")
        key, raw = item.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Empty key in '{item}'")
        if key in pairs:
            raise ValueError(f"Duplicate key '{key}'")
        pairs[key] = unquote(raw.strip())
    return pairs


def _coerce_mapping(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("{"):
            return json.loads(stripped)
        return parse_key_value_pairs(stripped)
    return value


def kind_name(kind: Any) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


def _coerce_exporter_kind(value: Any) -> Any:
    if isinstance(value, str) and not isinstance(value, Enum):
        value = value.strip().lower()
        # OTEL_*_EXPORTER uses "otlp"; gRPC is the only OTLP transport here
        if value == "otlp":
            return "otlp-grpc"
    return value


class TelemetryConfig(BaseSettings):
    """Static telemetry configuration, built once at process start."""

    resource_attributes: Annotated[Dict[str, str], NoDecode] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("resource_attributes", "OTEL_RESOURCE_ATTRIBUTES"),
    )
    service_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("service_name", "OTEL_SERVICE_NAME"),
    )
    trace_exporter: TraceExporterKind = Field(
        default=TraceExporterKind.OTLP_GRPC,
        validation_alias=AliasChoices("trace_exporter", "OTEL_TRACES_EXPORTER"),
    )
    metric_exporter: MetricExporterKind = Field(
        default=MetricExporterKind.CONSOLE,
        validation_alias=AliasChoices("metric_exporter", "OTEL_METRICS_EXPORTER"),
    )
    metric_export_interval_millis: int = Field(
        default=60_000,
        gt=0,
        validation_alias=AliasChoices("metric_export_interval_millis", "OTEL_METRIC_EXPORT_INTERVAL"),
    )
    metric_export_timeout_millis: int = Field(
        default=30_000,
        gt=0,
        validation_alias=AliasChoices("metric_export_timeout_millis", "OTEL_METRIC_EXPORT_TIMEOUT"),
    )
    instrumentations: Annotated[FrozenSet[str], NoDecode] = Field(
        default=frozenset({AUTO_INSTRUMENTATION}),
        validation_alias=AliasChoices("instrumentations", "OTEL_PYTHON_INSTRUMENTATIONS"),
    )

    # OTLP transport, used when either exporter is otlp-grpc
    otlp_endpoint: str = Field(
        default="http://localhost:4317",
        validation_alias=AliasChoices("otlp_endpoint", "OTEL_EXPORTER_OTLP_ENDPOINT"),
    )
    otlp_headers: Annotated[Dict[str, str], NoDecode] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("otlp_headers", "OTEL_EXPORTER_OTLP_HEADERS"),
        repr=False,
    )
    otlp_insecure: bool = Field(
        default=True,
        validation_alias=AliasChoices("otlp_insecure", "OTEL_EXPORTER_OTLP_INSECURE"),
    )
    otlp_timeout_seconds: int = Field(
        default=10,
        gt=0,
        validation_alias=AliasChoices("otlp_timeout_seconds", "OTEL_EXPORTER_OTLP_TIMEOUT"),
    )

    shutdown_grace_millis: int = Field(
        default=5_000,
        gt=0,
        validation_alias=AliasChoices("shutdown_grace_millis", "OTEL_SHUTDOWN_GRACE_MILLIS"),
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    @field_validator("resource_attributes", "otlp_headers", mode="before")
    @classmethod
    def parse_mapping(cls, v):
        """Accept a mapping, a JSON object or the OTEL key=value list."""
        return _coerce_mapping(v)

    @field_validator("trace_exporter", "metric_exporter", mode="before")
    @classmethod
    def parse_exporter_kind(cls, v):
        return _coerce_exporter_kind(v)

    @field_validator("instrumentations", mode="before")
    @classmethod
    def parse_instrumentations(cls, v):
        """Accept a comma-separated string or any iterable of identifiers."""
        if isinstance(v, str):
            v = v.split(",")
        return frozenset(item.strip().lower() for item in v if item and item.strip())

    def to_resource(self) -> Resource:
        """Returns an opentelemetry resource hydrated with config values."""
        attributes: Dict[str, str] = {}
        if self.service_name:
            attributes[SERVICE_NAME] = self.service_name
        attributes.update(self.resource_attributes)
        return Resource.create(attributes)

    def __str__(self):
        return (
            f"TelemetryConfig(trace_exporter={kind_name(self.trace_exporter)}, "
            f"metric_exporter={kind_name(self.metric_exporter)}, "
            f"metric_export_interval_millis={self.metric_export_interval_millis}, "
            f"instrumentations={sorted(self.instrumentations)}, "
            f"resource_attributes={self.resource_attributes})"
        )


def load_config(**overrides: Any) -> TelemetryConfig:
    """Build a TelemetryConfig from overrides and the environment.

    Raises:
        InvalidConfigError: If any value fails validation
    """
    try:
        config = TelemetryConfig(**overrides)
    except (ValidationError, SettingsError, ValueError) as e:
        raise InvalidConfigError(f"Invalid telemetry configuration: {e}") from e
    logger.debug(f"Loaded {config}")
    return config
