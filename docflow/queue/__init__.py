"""In-process job queues, workers, dead-letter queue and monitors."""

from docflow.queue.cancellation import ImportBatchStore, cancel_batch
from docflow.queue.dead_letter import DeadLetterQueue, DeadLetterRecord
from docflow.queue.jobs import Job, JobOptions, JobState, KeepPolicy, QUEUE_NAMES
from docflow.queue.job_queue import JobQueue
from docflow.queue.monitor import HealthMonitor, Heartbeat, StatsLogger
from docflow.queue.retry import RetryConfig
from docflow.queue.worker import Worker, WorkerEvent, WorkerOptions

__all__ = [
    "ImportBatchStore",
    "cancel_batch",
    "DeadLetterQueue",
    "DeadLetterRecord",
    "Job",
    "JobOptions",
    "JobState",
    "KeepPolicy",
    "QUEUE_NAMES",
    "JobQueue",
    "HealthMonitor",
    "Heartbeat",
    "StatsLogger",
    "RetryConfig",
    "Worker",
    "WorkerEvent",
    "WorkerOptions",
]
