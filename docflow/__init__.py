"""
Docflow
=======

Document ingestion pipeline for supplier invoices, credit notes and
statements.

Files arriving in a local or remote folder are deduplicated by content,
classified, read through coordinate templates (or a regex fallback),
matched to a company by account number and routed into dated
processed/failed folders. All work runs as jobs on named in-process
queues with retries, stall detection and a dead-letter queue.

Quick Start:
    from docflow.core.config import get_settings
    from docflow.queue.orchestrator import Orchestrator
    from docflow.utils.storage import Storage

    settings = get_settings()
    storage = await Storage(settings.database_path).connect()
    orchestrator = Orchestrator(settings, storage)
    await orchestrator.start()
"""

__version__ = "1.0.0"
