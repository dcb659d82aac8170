"""
Job records.

A job moves through ``waiting -> active -> completed | failed``, with
``delayed`` between a retryable failure and its next attempt. It is
mutated only by the queue, on behalf of the worker holding its lock.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from docflow.queue.retry import RetryConfig


class JobState(str, Enum):
    """Lifecycle states of a queued job."""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


# States in which a job still counts as queued work
PENDING_STATES = (JobState.WAITING, JobState.ACTIVE, JobState.DELAYED)

# Queue names
FILE_IMPORT = "file-import"
BULK_PARSING = "bulk-parsing-test"
INVOICE_IMPORT = "invoice-import"
EMAIL = "email"
SCHEDULED_TASKS = "scheduled-tasks"
QUEUE_NAMES = (FILE_IMPORT, BULK_PARSING, INVOICE_IMPORT, EMAIL, SCHEDULED_TASKS)

# An invoice-import job owns the document record with this id prefix
DOCUMENT_ID_PREFIX = "doc_"


def document_id_for_job(job_id: str) -> str:
    return f"{DOCUMENT_ID_PREFIX}{job_id}"


def job_id_for_document(document_id: str) -> Optional[str]:
    """Id of the invoice-import job that owns ``document_id``, if it is job-owned."""
    if document_id.startswith(DOCUMENT_ID_PREFIX):
        return document_id[len(DOCUMENT_ID_PREFIX):]
    return None


@dataclass
class KeepPolicy:
    """How many finished jobs a queue keeps, and for how long."""
    age_seconds: Optional[float] = None
    count: Optional[int] = None


@dataclass
class JobOptions:
    """Per-job options; queues supply defaults."""
    retry: RetryConfig = field(default_factory=RetryConfig)
    job_id: Optional[str] = None
    priority: int = 0       # lower runs first
    delay: float = 0.0      # seconds before the first attempt
    remove_on_complete: KeepPolicy = field(default_factory=KeepPolicy)
    remove_on_fail: KeepPolicy = field(default_factory=KeepPolicy)

    @property
    def attempts(self) -> int:
        return self.retry.max_attempts

    def with_overrides(self, **overrides: Any) -> "JobOptions":
        values = {
            "retry": self.retry,
            "job_id": self.job_id,
            "priority": self.priority,
            "delay": self.delay,
            "remove_on_complete": self.remove_on_complete,
            "remove_on_fail": self.remove_on_fail,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return JobOptions(**values)

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "JobOptions":
        return cls(
            retry=RetryConfig(**record.get("retry", {})),
            job_id=record.get("job_id"),
            priority=record.get("priority", 0),
            delay=record.get("delay", 0.0),
            remove_on_complete=KeepPolicy(**record.get("remove_on_complete", {})),
            remove_on_fail=KeepPolicy(**record.get("remove_on_fail", {})),
        )


@dataclass
class Job:
    """One unit of queued work."""
    id: str
    queue_name: str
    name: str
    data: Dict[str, Any]
    opts: JobOptions
    timestamp: float
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    attempts_started: int = 0
    stalled_count: int = 0
    lock_token: Optional[str] = None
    lock_expires_at: Optional[float] = None
    ready_at: Optional[float] = None
    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    failed_reason: Optional[str] = None
    stacktrace: List[str] = field(default_factory=list)
    return_value: Any = None
    progress: Any = 0

    @property
    def is_finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue_name,
            "name": self.name,
            "data": self.data,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "attempts": self.opts.attempts,
            "stalled_count": self.stalled_count,
            "timestamp": self.timestamp,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
            "failed_reason": self.failed_reason,
            "return_value": self.return_value,
            "progress": self.progress,
        }

    # Fields written to the job store. Lock tokens belong to a live worker
    # and are never persisted.
    _RECORD_FIELDS = (
        "id", "queue_name", "name", "data", "timestamp", "attempts_made",
        "attempts_started", "stalled_count", "lock_expires_at", "ready_at",
        "processed_on", "finished_on", "failed_reason", "stacktrace",
        "return_value", "progress",
    )

    def to_record(self) -> Dict[str, Any]:
        record = {name: getattr(self, name) for name in self._RECORD_FIELDS}
        record["state"] = self.state.value
        record["opts"] = self.opts.to_record()
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Job":
        values = {name: record[name] for name in cls._RECORD_FIELDS if name in record}
        return cls(
            state=JobState(record["state"]),
            opts=JobOptions.from_record(record.get("opts", {})),
            **values,
        )
