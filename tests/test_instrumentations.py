"""
Tests for the instrumentation registry.
"""

import pytest
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from otelboot import InvalidConfigError
from otelboot.instrumentations import (
    INSTRUMENTATIONS,
    activate_instrumentations,
    deactivate_instrumentations,
    resolve_instrumentations,
)


@pytest.fixture
def providers():
    tracer_provider = TracerProvider(shutdown_on_exit=False)
    meter_provider = MeterProvider(shutdown_on_exit=False)
    yield tracer_provider, meter_provider
    tracer_provider.shutdown()
    meter_provider.shutdown()


class TestResolve:
    """Tests for identifier resolution."""

    def test_auto_expands_to_all(self):
        """Test 'auto' selects every registered instrumentation."""
        assert resolve_instrumentations(["auto"]) == sorted(INSTRUMENTATIONS)
        assert resolve_instrumentations(["auto"]) == ["fastapi", "httpx", "logging"]

    def test_explicit_subset(self):
        """Test explicit identifiers are returned sorted and de-duplicated."""
        assert resolve_instrumentations(["logging", "httpx", "logging"]) == ["httpx", "logging"]

    def test_empty(self):
        """Test an empty set activates nothing."""
        assert resolve_instrumentations([]) == []

    def test_unknown_identifier(self):
        """Test unknown identifiers raise InvalidConfigError naming them."""
        with pytest.raises(InvalidConfigError, match="grpc-server"):
            resolve_instrumentations(["httpx", "grpc-server"])


class TestActivate:
    """Tests for installing and removing instrumentation hooks."""

    def test_activate_and_deactivate(self, providers):
        """Test hooks are installed and removed again."""
        tracer_provider, meter_provider = providers

        activated = activate_instrumentations(["httpx"], tracer_provider, meter_provider)
        try:
            assert activated == [HTTPXClientInstrumentor()]
            assert HTTPXClientInstrumentor().is_instrumented_by_opentelemetry is True
        finally:
            deactivate_instrumentations(activated)

        assert HTTPXClientInstrumentor().is_instrumented_by_opentelemetry is False

    def test_already_active_is_skipped(self, providers):
        """Test an instrumentor installed elsewhere is neither re-installed nor owned."""
        tracer_provider, meter_provider = providers
        LoggingInstrumentor().instrument(set_logging_format=False)
        try:
            activated = activate_instrumentations(["logging"], tracer_provider, meter_provider)
            assert activated == []

            deactivate_instrumentations(activated)
            assert LoggingInstrumentor().is_instrumented_by_opentelemetry is True
        finally:
            LoggingInstrumentor().uninstrument()
