#!/usr/bin/env python3
"""
Cooperative Ledger Entry Point

Starts the FastAPI server with the host, port and storage taken from
SCMS_* environment settings.
"""

import sys

import uvicorn

from cooperative_core.api import create_app
from cooperative_core.config import get_config
from cooperative_core.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info("Starting cooperative ledger API on %s:%s", config.api_host, config.api_port)

    try:
        uvicorn.run(create_app(), host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down cooperative ledger API")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)
