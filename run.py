#!/usr/bin/env python3
"""
Obligations Engine Entry Point

Starts the FastAPI server with the settings from OBLIGATIONS_* environment
variables (see core_obligations/config.py).
"""

import sys

from core_obligations.api import run_server
from core_obligations.config import get_config
from core_obligations.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(level=config.log_level, log_format=config.log_format,
                           log_file=config.log_file)
    logger.info("Starting obligations engine on %s:%s (storage: %s)",
                config.api_host, config.api_port, config.database_url)

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down obligations engine")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
