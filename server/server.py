"""Entry point for the sample host service.

Telemetry is bootstrapped before the application module is imported, so
every FastAPI app and httpx client the service builds is instrumented.
"""

import logging

import uvicorn

import otelboot
from otelboot import InvalidConfigError
from server.settings import HostServerSettings

logger = logging.getLogger(__name__)


def main():
    settings = HostServerSettings()
    logging.basicConfig(level=settings.server_log_level)

    try:
        otelboot.initialize()
    except InvalidConfigError as e:
        logger.error(f"Telemetry configuration rejected: {e}")
        raise

    from server.app import create_app

    app = create_app(settings)
    logger.info(f"Starting host server on {settings.server_host}:{settings.server_port}")
    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.server_log_level.lower()
    )


if __name__ == "__main__":
    main()
