"""Serve the Blu-ray collection relay; this is what the backend stage runs."""

from __future__ import annotations

import logging
import sys
from typing import Mapping

import uvicorn

from .api import create_app
from .config import load_relay_settings

LOGGER = logging.getLogger("Devstack.Relay")


def main(env: Mapping[str, str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    try:
        settings = load_relay_settings(env)
    except ValueError as exc:
        LOGGER.error(str(exc))
        return 1

    app = create_app(upstream_url=settings.upstream_url)
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    LOGGER.info("Blu-ray proxy server running on port %s", settings.port)
    LOGGER.info("Health check: http://localhost:%s/health", settings.port)
    server.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
