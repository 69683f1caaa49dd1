#!/usr/bin/env python3
"""
Startup script for the Funnel Portal API server.

This script starts the FastAPI server with logging configured from the
environment.
"""

import logging
import sys

import uvicorn

from funnel_portal.config import get_config

logger = logging.getLogger(__name__)


def main():
    """Start the API server."""
    try:
        config = get_config()

        logging.basicConfig(
            level=getattr(logging, config.logging.level),
            format=config.logging.format
        )

        logger.info("Starting Funnel Portal API Server...")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Host: {config.api.host}")
        logger.info(f"Port: {config.api.port}")
        logger.info(f"Debug: {config.api.debug}")
        logger.info(f"CORS Origins: {config.api.cors_origins}")

        uvicorn.run(
            "funnel_portal.api:app",
            host=config.api.host,
            port=config.api.port,
            reload=config.api.debug,
            log_level=config.logging.level.lower(),
            access_log=True,
            use_colors=True
        )

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Failed to start server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
