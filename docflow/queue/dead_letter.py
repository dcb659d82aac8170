"""
================================================================================
DEAD LETTER QUEUE
================================================================================
Holding area for jobs that failed terminally.

Features:
- One JSON file per record, written with aiofiles
- Records are append-only and never expire
- Filtering by original queue, per-queue counts
- Manual replay into the original queue as a new job
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from docflow.models import utc_now
from docflow.queue.jobs import Job
from docflow.queue.job_queue import JobQueue
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeadLetterRecord:
    """Snapshot of a terminally failed job."""
    id: str
    original_queue_name: str
    original_job_id: str
    job_name: str
    payload_snapshot: Dict[str, Any]
    failure_reason: str
    error_type: str
    stacktrace: List[str]
    attempts_made: int
    failed_at: datetime
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "original_queue_name": self.original_queue_name,
            "original_job_id": self.original_job_id,
            "job_name": self.job_name,
            "payload_snapshot": self.payload_snapshot,
            "failure_reason": self.failure_reason,
            "error_type": self.error_type,
            "stacktrace": self.stacktrace,
            "attempts_made": self.attempts_made,
            "failed_at": self.failed_at.isoformat(),
            "tags": self.tags,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeadLetterRecord":
        return cls(
            id=data["id"],
            original_queue_name=data["original_queue_name"],
            original_job_id=data["original_job_id"],
            job_name=data.get("job_name", ""),
            payload_snapshot=data["payload_snapshot"],
            failure_reason=data["failure_reason"],
            error_type=data.get("error_type", "Exception"),
            stacktrace=data.get("stacktrace", []),
            attempts_made=data["attempts_made"],
            failed_at=datetime.fromisoformat(data["failed_at"]),
            tags=data.get("tags", []),
        )


class DeadLetterQueue:
    """
    Durable store of terminal job failures.

    Nothing here deletes a record: entries stay until an operator removes
    the files by hand.
    """

    def __init__(self, storage_path: str = "./data/dlq"):
        self._storage_path = Path(storage_path)
        self._storage_path.mkdir(parents=True, exist_ok=True)
        self._records: Dict[str, DeadLetterRecord] = {}
        self._stats = {
            "total_added": 0,
            "total_replayed": 0,
        }

    async def initialize(self):
        """Load persisted records from disk"""
        await self._load_records()

    async def _load_records(self):
        for file_path in sorted(self._storage_path.glob("*.json")):
            try:
                async with aiofiles.open(file_path, "r") as f:
                    data = json.loads(await f.read())
                record = DeadLetterRecord.from_dict(data)
                self._records[record.id] = record
            except (OSError, ValueError, KeyError) as e:
                logger.error("dead_letter_load_failed", path=str(file_path), error=str(e))

        logger.info("dead_letter_loaded", count=len(self._records))

    async def _save_record(self, record: DeadLetterRecord):
        file_path = self._storage_path / f"{record.id}.json"
        async with aiofiles.open(file_path, "w") as f:
            await f.write(json.dumps(record.to_dict(), indent=2, default=str))

    async def add(
        self,
        job: Job,
        error: Optional[BaseException] = None,
        tags: Optional[List[str]] = None,
    ) -> DeadLetterRecord:
        """Snapshot ``job`` after its terminal failure."""
        record = DeadLetterRecord(
            id=str(uuid.uuid4()),
            original_queue_name=job.queue_name,
            original_job_id=job.id,
            job_name=job.name,
            payload_snapshot=dict(job.data),
            failure_reason=job.failed_reason or (str(error) if error else "unknown"),
            error_type=type(error).__name__ if error else "Stalled",
            stacktrace=list(job.stacktrace),
            attempts_made=job.attempts_made,
            failed_at=utc_now(),
            tags=tags or [],
        )
        self._records[record.id] = record
        await self._save_record(record)
        self._stats["total_added"] += 1

        logger.warning(
            "job_dead_lettered",
            queue=job.queue_name,
            job_id=job.id,
            record_id=record.id,
            attempts_made=job.attempts_made,
            reason=record.failure_reason,
        )
        return record

    def get(self, record_id: str) -> Optional[DeadLetterRecord]:
        return self._records.get(record_id)

    def list_records(self, queue_name: Optional[str] = None) -> List[DeadLetterRecord]:
        records = list(self._records.values())
        if queue_name:
            records = [r for r in records if r.original_queue_name == queue_name]
        records.sort(key=lambda r: r.failed_at)
        return records

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in self._records.values():
            counts[record.original_queue_name] = counts.get(record.original_queue_name, 0) + 1
        return counts

    async def replay(self, record_id: str, queue: JobQueue) -> Optional[Job]:
        """Re-enqueue a record's payload as a new job. The record is kept."""
        record = self._records.get(record_id)
        if record is None:
            return None
        if queue.name != record.original_queue_name:
            raise ValueError(
                f"Record {record_id} belongs to {record.original_queue_name}, not {queue.name}"
            )
        job = await queue.add(record.job_name, dict(record.payload_snapshot))
        self._stats["total_replayed"] += 1
        logger.info("dead_letter_replayed", record_id=record_id, queue=queue.name, job_id=job.id)
        return job

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "current_items": len(self._records),
            "by_queue": self.counts(),
        }
