#!/usr/bin/env python3
"""
Custody Ledger Entry Point

Starts the FastAPI server with a ledger wired from CUSTODY_LEDGER_* settings.
"""

import sys

from custody_ledger.api import run_server
from custody_ledger.config import get_config
from custody_ledger.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, config.log_file)
    logger.info(f"Starting custody ledger on {config.api_host}:{config.api_port} "
                f"(storage={config.storage_backend})")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down custody ledger")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
