#!/usr/bin/env python3
"""
Docflow Worker - Main Entry Point

Runs the document ingestion queues, their workers and the maintenance
scheduler until SIGINT or SIGTERM.

Usage:
    docflow-worker

Environment Variables:
    FTP_INBOUND_PATH - Folder scanned for new documents
    DATABASE_PATH - SQLite database file
    SMTP_HOST - Required for outbound email
"""

import asyncio
import signal
import sys
from typing import Optional

from docflow.core.config import get_settings
from docflow.queue.orchestrator import Orchestrator
from docflow.utils.logger import configure_logging, get_logger
from docflow.utils.storage import Storage

configure_logging()
logger = get_logger(__name__)

_shutdown_event: Optional[asyncio.Event] = None


async def run_worker() -> None:
    """Start everything and wait for a shutdown signal."""
    global _shutdown_event

    settings = get_settings()
    logger.info(
        "docflow_starting",
        inbound=str(settings.inbound_path),
        scan_enabled=settings.scan_enabled,
        scan_frequency_minutes=settings.scan_frequency_minutes,
        test_mode=settings.test_mode,
    )

    storage = await Storage(settings.database_path).connect()
    orchestrator = Orchestrator(settings, storage)

    _shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown_event.set)

    await orchestrator.start()
    logger.info("docflow_running")

    try:
        await _shutdown_event.wait()
    except asyncio.CancelledError:
        logger.info("docflow_cancelled")
    finally:
        await orchestrator.shutdown()
        await storage.close()
    logger.info("docflow_stopped")


def main() -> None:
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("docflow_interrupted")
    except Exception as e:
        logger.error("docflow_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
