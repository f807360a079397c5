"""
Sample host service for the telemetry bootstrap.

Import this module only after `otelboot.initialize()`: FastAPI apps built
before the bootstrap are not instrumented. `fastapi.FastAPI` is looked up
at call time for the same reason.
"""

import logging
import time
from contextlib import asynccontextmanager

import fastapi
from fastapi.responses import JSONResponse
from opentelemetry import metrics, trace

import otelboot
from server.settings import HostServerSettings

logger = logging.getLogger(__name__)


def create_app(settings: HostServerSettings = None) -> fastapi.FastAPI:
    """Create the FastAPI app.

    Shutting the app down also shuts the telemetry SDK down, flushing
    anything still buffered.
    """
    if not settings:
        settings = HostServerSettings()

    @asynccontextmanager
    async def lifespan(app: fastapi.FastAPI):
        logger.info("Host server startup")
        yield
        logger.info("Host server shutdown")
        otelboot.shutdown()

    app = fastapi.FastAPI(title=f"Host: {settings.server_name}", lifespan=lifespan)

    tracer = trace.get_tracer("server.app")
    meter = metrics.get_meter("server.app")
    work_counter = meter.create_counter(
        "host.work.requests", description="Work request count", unit="1"
    )

    @app.get("/health")
    async def health():
        """Health check endpoint for liveness probes."""
        return JSONResponse({
            "status": "healthy",
            "name": settings.server_name,
            "timestamp": int(time.time())
        })

    @app.get("/ready")
    async def ready():
        """Readiness check endpoint, reports the telemetry lifecycle too."""
        return JSONResponse({
            "status": "ready",
            "name": settings.server_name,
            "telemetry": otelboot.get_state().value,
            "timestamp": int(time.time())
        })

    @app.get("/work/{item}")
    async def work(item: str):
        """Do a unit of traced work."""
        with tracer.start_as_current_span("host.work", attributes={"work.item": item}):
            work_counter.add(1, {"work.item": item})
            logger.info(f"Processed work item {item}")
            return JSONResponse({"item": item, "status": "done"})

    logger.info(f"Created host FastAPI app: {settings.server_name}")
    return app
