"""
graphbind remote engine - Main entry point.

This module serves an embedded GraphStore over HTTP, so that clients in the
REMOTE and REMOTE_BATCH modes have a store to talk to:
- neo4j clients use the /db/data mount
- titan and rexster clients use /graphs/<database> mounts

Usage:
    python -m graphbind.main

Configuration is entirely via GRAPHBIND_SERVER_* environment variables.
See engine/config.py for all available settings.

Invariants:
    - The store is shut down when the server stops
"""

from __future__ import annotations

import logging

import json_log_formatter
import uvicorn

from .engine.config import ServerSettings
from .engine.graph_store import GraphStore
from .engine.http_server import create_app

logger = logging.getLogger(__name__)


def setup_logging(settings: ServerSettings) -> None:
    """Configure logging based on configuration.

    Args:
        settings: Server settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
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


def run(settings: ServerSettings | None = None) -> None:
    """Open the store and serve it until interrupted."""
    settings = settings or ServerSettings()
    setup_logging(settings)

    store = GraphStore.open(
        settings.data_dir,
        wal_mode=settings.wal_mode,
        busy_timeout_ms=settings.busy_timeout_ms,
    )
    app = create_app(
        store,
        mounts=settings.mounts,
        max_waiting_writers=settings.max_waiting_writers,
    )
    logger.info(
        "Starting remote engine",
        extra={
            "host": settings.host,
            "port": settings.port,
            "data_dir": settings.data_dir,
            "mounts": settings.mounts,
        },
    )
    try:
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    finally:
        app.state.writer_gate.shutdown()
        store.shutdown()


if __name__ == "__main__":
    run()
