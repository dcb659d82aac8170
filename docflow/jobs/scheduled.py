"""
scheduled-tasks job and scheduler.

Maintenance work is queued as named tasks on the scheduled-tasks queue
and dispatched by ``taskName``:

- ``local-folder-scan``: scan the inbound folder
- ``remote-folder-scan``: scan the configured FTP/SFTP folder
- ``file-cleanup``: delete stored files older than FILE_RETENTION_DAYS
- ``document-retention-cleanup``: soft-delete documents past their
  retention expiry

The ``Scheduler`` enqueues each task once per schedule slot. Job ids are
derived from the slot, so a slot is never queued twice however often the
scheduler ticks.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from docflow.core.config import Settings
from docflow.ingestion.retention import should_delete
from docflow.ingestion.scanner import SourceScanner
from docflow.ingestion.sources import DocumentSource, LocalFolderSource, source_from_config
from docflow.jobs.context import PipelineContext
from docflow.models import ScheduledTaskPayload, utc_now
from docflow.queue.jobs import INVOICE_IMPORT, Job
from docflow.queue.job_queue import JobQueue
from docflow.queue.monitor import PeriodicTask
from docflow.utils.errors import StorageError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)

LOCAL_FOLDER_SCAN = "local-folder-scan"
REMOTE_FOLDER_SCAN = "remote-folder-scan"
FILE_CLEANUP = "file-cleanup"
DOCUMENT_RETENTION_CLEANUP = "document-retention-cleanup"

FILE_CLEANUP_HOUR = 2


def _scanner(ctx: PipelineContext, source: DocumentSource) -> SourceScanner:
    settings = ctx.settings
    return SourceScanner(
        source=source,
        documents=ctx.storage.documents,
        dedup=ctx.dedup,
        router=ctx.router,
        invoice_queue=ctx.queue(INVOICE_IMPORT),
        run_stats=ctx.run_stats,
        min_file_age=settings.scan_min_file_age_seconds,
        recent_window=settings.scan_recent_window_seconds,
        extensions=settings.supported_extensions,
    )


async def _scan(ctx: PipelineContext, source: DocumentSource) -> Dict[str, Any]:
    if not ctx.settings.scan_enabled:
        logger.info("scan_disabled", source=source.kind.value)
        return {"success": True, "skipped": True, "message": "Scanning is disabled"}
    try:
        result = await _scanner(ctx, source).scan()
    finally:
        await source.close()
    if ctx.email_queue is not None:
        try:
            await ctx.email_queue.send_scan_summary(result, ctx.settings.admin_emails)
        except Exception as e:
            logger.error("scan_summary_failed", error=str(e))
    return {"success": True, **result.to_dict()}


async def run_local_folder_scan(ctx: PipelineContext) -> Dict[str, Any]:
    return await _scan(ctx, LocalFolderSource(ctx.settings.inbound_path))


async def run_remote_folder_scan(ctx: PipelineContext) -> Dict[str, Any]:
    if not ctx.settings.remote_configured:
        return {"success": True, "skipped": True, "message": "No remote source configured"}
    return await _scan(ctx, source_from_config({}, ctx.settings))


async def run_file_cleanup(ctx: PipelineContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Delete stored files older than the file retention period and soft-delete their records."""
    days = ctx.settings.file_retention_days
    if not days or days <= 0:
        logger.info("file_cleanup_disabled")
        return {"success": True, "deleted": 0, "errors": 0, "total": 0}

    now = now or utc_now()
    cutoff = now - timedelta(days=days)
    documents = ctx.storage.documents
    expired = [d for d in await documents.list_documents() if d.created_at < cutoff]

    deleted = errors = 0
    for document in expired:
        try:
            if document.physical_location:
                Path(document.physical_location).unlink(missing_ok=True)
            await documents.soft_delete(document.id, now)
            deleted += 1
        except (OSError, StorageError) as e:
            logger.error("file_cleanup_error", document_id=document.id, error=str(e))
            errors += 1

    logger.info("file_cleanup_completed", deleted=deleted, errors=errors, total=len(expired))
    return {"success": True, "deleted": deleted, "errors": errors, "total": len(expired)}


async def run_document_retention_cleanup(ctx: PipelineContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Soft-delete documents whose retention expiry has passed."""
    settings = ctx.settings
    if not settings.retention_enabled:
        logger.info("document_retention_disabled")
        return {"success": True, "deleted": 0, "errors": 0}

    now = now or utc_now()
    documents = ctx.storage.documents
    deleted = errors = 0
    for document in await documents.list_documents():
        if not should_delete(document, settings.document_retention_days, now, settings.retention_start):
            continue
        if document.physical_location:
            try:
                Path(document.physical_location).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("retention_file_delete_failed", document_id=document.id, error=str(e))
        try:
            await documents.soft_delete(document.id, now)
            deleted += 1
        except StorageError as e:
            logger.error("retention_delete_failed", document_id=document.id, error=str(e))
            errors += 1

    logger.info("document_retention_completed", deleted=deleted, errors=errors)
    return {"success": True, "deleted": deleted, "errors": errors}


TASKS: Dict[str, Callable[[PipelineContext], Awaitable[Dict[str, Any]]]] = {
    LOCAL_FOLDER_SCAN: run_local_folder_scan,
    REMOTE_FOLDER_SCAN: run_remote_folder_scan,
    FILE_CLEANUP: run_file_cleanup,
    DOCUMENT_RETENTION_CLEANUP: run_document_retention_cleanup,
}


async def process_scheduled_task(
    ctx: PipelineContext,
    job: Job,
    payload: ScheduledTaskPayload,
) -> Dict[str, Any]:
    task = TASKS.get(payload.task_name)
    if task is None:
        logger.warning("scheduled_task_unknown", task_name=payload.task_name)
        return {"success": False, "message": "Unknown task"}
    logger.info("scheduled_task_started", task_name=payload.task_name, job_id=job.id)
    return await task(ctx)


# =============================================================================
# Scheduling
# =============================================================================

def scan_slot(now: datetime, frequency_minutes: int) -> datetime:
    """Start of the scan slot containing ``now``, aligned to midnight UTC."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    minutes = int((now - midnight).total_seconds() // 60)
    return midnight + timedelta(minutes=minutes - minutes % frequency_minutes)


def daily_slot(now: datetime, hour: int) -> Optional[datetime]:
    """Today's ``hour:00`` once it has passed, else None."""
    slot = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    return slot if now >= slot else None


def hourly_slot(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def slot_job_id(task_name: str, slot: datetime) -> str:
    return f"{task_name}:{slot.strftime('%Y%m%dT%H%M')}"


class Scheduler(PeriodicTask):
    """Queues scheduled tasks when their slot comes up."""

    name = "scheduler"

    def __init__(
        self,
        queue: JobQueue,
        settings: Settings,
        interval: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(interval)
        self.queue = queue
        self.settings = settings
        self.clock = clock

    def due(self, now: datetime) -> List[Tuple[str, str]]:
        """``(task_name, job_id)`` pairs whose current slot has started."""
        due = []
        if self.settings.scan_enabled:
            slot = scan_slot(now, self.settings.scan_frequency_minutes)
            due.append((LOCAL_FOLDER_SCAN, slot_job_id(LOCAL_FOLDER_SCAN, slot)))
            if self.settings.remote_configured:
                due.append((REMOTE_FOLDER_SCAN, slot_job_id(REMOTE_FOLDER_SCAN, slot)))
        cleanup = daily_slot(now, FILE_CLEANUP_HOUR)
        if cleanup is not None and self.settings.file_retention_days:
            due.append((FILE_CLEANUP, slot_job_id(FILE_CLEANUP, cleanup)))
        if self.settings.retention_enabled:
            due.append((DOCUMENT_RETENTION_CLEANUP, slot_job_id(DOCUMENT_RETENTION_CLEANUP, hourly_slot(now))))
        return due

    async def tick(self):
        await self.enqueue_due()

    async def enqueue_due(self) -> List[Job]:
        jobs = []
        for task_name, job_id in self.due(self.clock()):
            if self.queue.get_job(job_id) is not None:
                continue
            payload = ScheduledTaskPayload(task_name=task_name)
            job = await self.queue.add(task_name, payload.to_job_data(), job_id=job_id)
            logger.info("scheduled_task_queued", task_name=task_name, job_id=job.id)
            jobs.append(job)
        return jobs
