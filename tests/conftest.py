"""
Shared fixtures.

Every test starts from an uninitialized bootstrap, unset OpenTelemetry
global providers and an environment without OTEL_* variables.
"""

import os

import pytest

import otelboot


@pytest.fixture(autouse=True)
def fresh_telemetry(monkeypatch):
    """Reset the process-wide bootstrap and OTel globals around each test."""
    for key in list(os.environ):
        if key.startswith("OTEL_"):
            monkeypatch.delenv(key)

    otelboot.reset()
    yield
    otelboot.reset()


@pytest.fixture
def make_config():
    """Build a local-only config; keyword arguments override the defaults."""

    def _make(**overrides):
        values = {
            "trace_exporter": "in-memory",
            "metric_exporter": "none",
            "instrumentations": [],
            "shutdown_grace_millis": 1000,
        }
        values.update(overrides)
        return otelboot.load_config(**values)

    return _make
