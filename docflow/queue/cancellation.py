"""
Import batches and cooperative cancellation.

A multi-file import is tracked as a batch. Job bodies poll
``is_cancelled`` at file boundaries and around network operations;
``cancel_batch`` flips the flag, pulls the batch's not-yet-started jobs
off the queue and deletes partial downloads. Finished work is kept.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from docflow.models import utc_now
from docflow.queue.jobs import JobState
from docflow.queue.job_queue import JobQueue
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


class BatchStatus:
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class ImportBatch:
    """Progress of one multi-file import."""
    id: str
    total_files: int
    file_paths: List[str] = field(default_factory=list)
    processed_files: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    status: str = BatchStatus.PROCESSING
    cancelled: bool = False
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "status": self.status,
            "cancelled": self.cancelled,
            "results": self.results,
            "errors": self.errors,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class ImportBatchStore:
    """In-process registry of import batches."""

    def __init__(self, ttl_hours: int = 24, clock: Callable[[], datetime] = utc_now):
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock
        self._batches: Dict[str, ImportBatch] = {}
        self._lock = asyncio.Lock()

    async def create(self, batch_id: str, total_files: int, file_paths: Iterable[str] = ()) -> ImportBatch:
        batch = ImportBatch(
            id=batch_id,
            total_files=total_files,
            file_paths=list(file_paths),
            created_at=self.clock(),
        )
        async with self._lock:
            self._batches[batch_id] = batch
        logger.info("import_batch_created", batch_id=batch_id, total_files=total_files)
        return batch

    async def get(self, batch_id: str) -> Optional[ImportBatch]:
        return self._batches.get(batch_id)

    async def add_result(self, batch_id: str, result: Dict[str, Any]) -> Optional[ImportBatch]:
        """Record one file's outcome; the batch completes with its last file."""
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                logger.warning("import_batch_missing", batch_id=batch_id)
                return None
            batch.results.append(result)
            batch.processed_files += 1
            if not result.get("success", False):
                batch.errors.append({
                    "file_name": result.get("file_name"),
                    "error": result.get("error"),
                })
            if batch.processed_files >= batch.total_files and batch.status == BatchStatus.PROCESSING:
                batch.status = BatchStatus.COMPLETED
                batch.completed_at = self.clock()
                logger.info(
                    "import_batch_completed",
                    batch_id=batch_id,
                    processed=batch.processed_files,
                    errors=len(batch.errors),
                )
        return batch

    async def cancel(self, batch_id: str) -> bool:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return False
            batch.cancelled = True
            batch.status = BatchStatus.CANCELLED
        logger.info("import_batch_cancelled", batch_id=batch_id)
        return True

    async def is_cancelled(self, batch_id: Optional[str]) -> bool:
        if not batch_id:
            return False
        batch = self._batches.get(batch_id)
        return batch.cancelled if batch else False

    async def delete(self, batch_id: str) -> List[str]:
        """Forget a batch and return its file paths for cleanup."""
        async with self._lock:
            batch = self._batches.pop(batch_id, None)
        return batch.file_paths if batch else []

    async def expire(self) -> int:
        """Drop batches older than the TTL."""
        cutoff = self.clock() - self.ttl
        async with self._lock:
            expired = [bid for bid, b in self._batches.items() if b.created_at < cutoff]
            for batch_id in expired:
                del self._batches[batch_id]
        if expired:
            logger.info("import_batches_expired", count=len(expired))
        return len(expired)


async def cancel_batch(
    store: ImportBatchStore,
    batch_id: str,
    queues: Iterable[JobQueue],
    download_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Cancel a batch.

    Waiting and delayed jobs carrying the batch id are removed; active jobs
    see the flag at their next check. Files registered with the batch that
    live under ``download_dir`` are partial downloads and are deleted.
    """
    if not await store.cancel(batch_id):
        return {"cancelled": False, "removed_jobs": 0, "deleted_files": 0}

    removed = 0
    for queue in queues:
        for job in queue.get_jobs([JobState.WAITING, JobState.DELAYED]):
            if job.data.get("importBatchId") == batch_id and await queue.remove(job.id):
                removed += 1

    deleted = 0
    batch = await store.get(batch_id)
    if download_dir is not None and batch is not None:
        root = Path(download_dir).resolve()
        for path_str in batch.file_paths:
            path = Path(path_str)
            try:
                if root in path.resolve().parents and path.exists():
                    path.unlink()
                    deleted += 1
            except OSError as e:
                logger.warning("partial_download_delete_failed", path=path_str, error=str(e))

    logger.info("import_batch_cancel_done", batch_id=batch_id, removed_jobs=removed, deleted_files=deleted)
    return {"cancelled": True, "removed_jobs": removed, "deleted_files": deleted}
