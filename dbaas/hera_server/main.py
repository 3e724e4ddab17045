"""
HERA Server - Main entry point.

This module starts the HTTP API (FastAPI under uvicorn) backed by the
universal SQLite store.

Usage:
    python -m dbaas.hera_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Logging is configured before the app is created
    - uvicorn does not override the logging configuration (log_config=None)

How to change safely:
    - Workers > 1 need the import-string factory form, keep APP_FACTORY in sync
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .config import ServerConfig

logger = logging.getLogger(__name__)

APP_FACTORY = "dbaas.hera_server.api.http_server:create_app"


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    # uvicorn installs its own SIGTERM/SIGINT handlers for graceful shutdown
    uvicorn.run(
        APP_FACTORY,
        factory=True,
        host=config.http.host,
        port=config.http.port,
        workers=config.http.workers,
        log_config=None,
    )


if __name__ == "__main__":
    main()
