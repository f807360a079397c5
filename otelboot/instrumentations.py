"""Auto-instrumentation registry.

Identifiers in `TelemetryConfig.instrumentations` map to OpenTelemetry
instrumentors here. `auto` selects every registered instrumentor.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List

from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.instrumentor import BaseInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor

from otelboot.config import AUTO_INSTRUMENTATION
from otelboot.errors import InvalidConfigError

logger = logging.getLogger(__name__)

INSTRUMENTATIONS: Dict[str, Callable[[], BaseInstrumentor]] = {
    "fastapi": FastAPIInstrumentor,
    "httpx": HTTPXClientInstrumentor,
    "logging": LoggingInstrumentor,
}

# Extra keyword arguments passed to instrument() per identifier
INSTRUMENT_OPTIONS: Dict[str, Dict[str, Any]] = {
    # Only inject trace ids into records; the host owns the log format
    "logging": {"set_logging_format": False},
}


def resolve_instrumentations(identifiers: Iterable[str]) -> List[str]:
    """Expand and validate instrumentation identifiers.

    Args:
        identifiers: Configured identifiers, possibly including `auto`

    Returns:
        Sorted list of registered identifiers to activate

    Raises:
        InvalidConfigError: If any identifier is not registered
    """
    resolved = set()
    unknown = []
    for identifier in identifiers:
        if identifier == AUTO_INSTRUMENTATION:
            resolved.update(INSTRUMENTATIONS)
        elif identifier in INSTRUMENTATIONS:
            resolved.add(identifier)
        else:
            unknown.append(identifier)

    if unknown:
        valid = ", ".join(sorted(INSTRUMENTATIONS) + [AUTO_INSTRUMENTATION])
        raise InvalidConfigError(
            f"Unknown instrumentation(s) {sorted(unknown)}. Valid options are: {valid}"
        )
    return sorted(resolved)


def activate_instrumentations(
    identifiers: Iterable[str], tracer_provider, meter_provider
) -> List[BaseInstrumentor]:
    """Install the instrumentors for already-resolved identifiers.

    Instrumentors that are already active are left alone and not returned,
    so they are not torn down by deactivate_instrumentations().
    """
    activated: List[BaseInstrumentor] = []
    try:
        for identifier in identifiers:
            instrumentor = INSTRUMENTATIONS[identifier]()
            if instrumentor.is_instrumented_by_opentelemetry:
                logger.debug(f"Instrumentation '{identifier}' already active, skipping")
                continue
            instrumentor.instrument(
                tracer_provider=tracer_provider,
                meter_provider=meter_provider,
                **INSTRUMENT_OPTIONS.get(identifier, {}),
            )
            # instrument() skips installation on dependency version conflicts
            if not instrumentor.is_instrumented_by_opentelemetry:
                logger.warning(f"Instrumentation '{identifier}' was not installed")
                continue
            activated.append(instrumentor)
            logger.debug(f"Activated instrumentation: {identifier}")
    except Exception:
        deactivate_instrumentations(activated)
        raise
    return activated


def deactivate_instrumentations(instrumentors: Iterable[BaseInstrumentor]) -> None:
    """Remove installed hooks, in reverse installation order."""
    for instrumentor in reversed(list(instrumentors)):
        try:
            instrumentor.uninstrument()
        except Exception as e:
            logger.warning(f"Failed to uninstrument {type(instrumentor).__name__}: {e}")
