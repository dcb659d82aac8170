"""
================================================================================
JOB ORCHESTRATOR
================================================================================
Builds and runs the five named queues with their workers and monitors.

Features:
- Per-queue default job options (attempts, backoff, retention of
  finished jobs) and worker options (concurrency, lock duration, stall
  handling)
- Payloads validated at dequeue time; a payload that does not fit its
  queue's schema fails the job without retries
- Jobs are written through to SQLite and reloaded on start; jobs that
  were active when the previous process stopped are requeued as stalled
- Terminal failures land in the dead-letter queue
- Health monitor, heartbeat, stats logger and task scheduler
- Cooperative, idempotent shutdown
"""

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from docflow.core.config import Settings
from docflow.jobs import (
    PipelineContext,
    Scheduler,
    process_bulk_parsing,
    process_email,
    process_file_import,
    process_invoice_import,
    process_scheduled_task,
)
from docflow.models import parse_payload, utc_now
from docflow.notify.senders import EmailSender
from docflow.queue.dead_letter import DeadLetterQueue
from docflow.queue.jobs import (
    BULK_PARSING,
    EMAIL,
    FILE_IMPORT,
    INVOICE_IMPORT,
    SCHEDULED_TASKS,
    Job,
    JobOptions,
    KeepPolicy,
)
from docflow.queue.job_queue import JobQueue
from docflow.queue.monitor import HealthMonitor, Heartbeat, StatsLogger
from docflow.queue.retry import RetryConfig
from docflow.queue.worker import Worker, WorkerOptions
from docflow.utils.errors import UnrecoverableJobError
from docflow.utils.logger import get_logger
from docflow.utils.storage import Storage

logger = get_logger(__name__)

HOUR = 3600
DAY = 24 * HOUR


@dataclass(frozen=True)
class QueueDefinition:
    name: str
    job_options: JobOptions
    worker_options: WorkerOptions


QUEUE_DEFINITIONS: Dict[str, QueueDefinition] = {
    FILE_IMPORT: QueueDefinition(
        FILE_IMPORT,
        JobOptions(
            retry=RetryConfig(max_attempts=3, base_delay=2.0),
            remove_on_complete=KeepPolicy(age_seconds=DAY, count=1000),
            remove_on_fail=KeepPolicy(age_seconds=7 * DAY),
        ),
        WorkerOptions(concurrency=1, lock_duration=60.0),
    ),
    BULK_PARSING: QueueDefinition(
        BULK_PARSING,
        JobOptions(
            retry=RetryConfig(max_attempts=2, base_delay=1.0),
            remove_on_complete=KeepPolicy(age_seconds=HOUR, count=100),
            remove_on_fail=KeepPolicy(age_seconds=HOUR),
        ),
        WorkerOptions(concurrency=2, lock_duration=120.0),
    ),
    INVOICE_IMPORT: QueueDefinition(
        INVOICE_IMPORT,
        JobOptions(
            retry=RetryConfig(max_attempts=2, base_delay=2.0),
            remove_on_complete=KeepPolicy(age_seconds=DAY, count=500),
            remove_on_fail=KeepPolicy(age_seconds=7 * DAY),
        ),
        WorkerOptions(concurrency=2, lock_duration=120.0),
    ),
    EMAIL: QueueDefinition(
        EMAIL,
        JobOptions(
            retry=RetryConfig(max_attempts=10, base_delay=60.0, max_delay=HOUR),
            remove_on_complete=KeepPolicy(age_seconds=7 * DAY, count=5000),
            remove_on_fail=KeepPolicy(age_seconds=30 * DAY),
        ),
        WorkerOptions(concurrency=1, lock_duration=60.0),
    ),
    SCHEDULED_TASKS: QueueDefinition(
        SCHEDULED_TASKS,
        JobOptions(
            retry=RetryConfig(max_attempts=3, base_delay=5.0),
            remove_on_complete=KeepPolicy(age_seconds=7 * DAY, count=100),
            remove_on_fail=KeepPolicy(age_seconds=30 * DAY),
        ),
        WorkerOptions(concurrency=1, lock_duration=60.0),
    ),
}


def queue_definitions(settings: Settings) -> Dict[str, QueueDefinition]:
    """QUEUE_DEFINITIONS with concurrency, stall and email attempt settings applied."""
    concurrency = {
        FILE_IMPORT: settings.file_import_concurrency,
        BULK_PARSING: settings.bulk_parsing_concurrency,
        INVOICE_IMPORT: settings.invoice_import_concurrency,
        EMAIL: settings.email_worker_concurrency,
        SCHEDULED_TASKS: 1,
    }
    definitions = {}
    for name, definition in QUEUE_DEFINITIONS.items():
        worker_options = replace(
            definition.worker_options,
            concurrency=concurrency[name],
            stalled_interval=settings.stalled_interval_seconds,
            max_stalled_count=settings.max_stalled_count,
        )
        job_options = definition.job_options
        if name == EMAIL:
            job_options = job_options.with_overrides(
                retry=replace(job_options.retry, max_attempts=settings.email_max_attempts)
            )
        definitions[name] = QueueDefinition(name, job_options, worker_options)
    return definitions


Handler = Callable[[PipelineContext, Job, Any], Awaitable[Any]]

PROCESSORS: Dict[str, Handler] = {
    FILE_IMPORT: process_file_import,
    BULK_PARSING: process_bulk_parsing,
    INVOICE_IMPORT: process_invoice_import,
    EMAIL: process_email,
    SCHEDULED_TASKS: process_scheduled_task,
}


class Orchestrator:
    """Owns the queues, workers and background monitors of one process."""

    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        sender: Optional[EmailSender] = None,
        clock: Callable[[], float] = time.time,
        enable_scheduler: bool = True,
    ):
        self.settings = settings
        self.storage = storage
        self.sender = sender
        self.clock = clock
        self.enable_scheduler = enable_scheduler
        self.definitions = queue_definitions(settings)
        self.queues: Dict[str, JobQueue] = {
            name: JobQueue(name, definition.job_options, clock=clock, store=storage.jobs)
            for name, definition in self.definitions.items()
        }
        self.dead_letter = DeadLetterQueue(str(settings.dlq_storage_path))
        self.context = PipelineContext.build(settings, storage, self.queues, sender=sender)
        self.workers: Dict[str, Worker] = {}
        self.health_monitor = HealthMonitor(
            self.queues,
            interval=settings.health_check_interval_seconds,
            queue_threshold=settings.queue_alert_threshold,
            failed_threshold=settings.failed_alert_threshold,
        )
        self.health_monitor.on_alert(self._mail_alert)
        self.heartbeat = Heartbeat(
            settings.heartbeat_path,
            worker_count=lambda: sum(1 for w in self.workers.values() if w.is_running),
            interval=settings.heartbeat_interval_seconds,
            ttl=settings.heartbeat_ttl_seconds,
        )
        self.stats_logger = StatsLogger(self.queues, interval=settings.stats_log_interval_seconds)
        self.scheduler = Scheduler(self.queues[SCHEDULED_TASKS], settings)
        self._started = False
        self._shutdown = False

    def processor_for(self, name: str) -> Callable[[Job], Awaitable[Any]]:
        """Validate the payload for ``name``, then hand it to the queue's handler."""
        handler = PROCESSORS[name]

        async def process(job: Job) -> Any:
            try:
                payload = parse_payload(name, job.data)
            except (ValidationError, ValueError) as e:
                raise UnrecoverableJobError(
                    f"Invalid {name} payload: {e}",
                    context={"job_id": job.id},
                ) from e
            return await handler(self.context, job, payload)

        return process

    async def start(self) -> None:
        if self._started:
            logger.warning("orchestrator_already_started")
            return
        self._started = True
        await self.dead_letter.initialize()
        restored = {name: await queue.restore() for name, queue in self.queues.items()}

        for name, definition in self.definitions.items():
            worker = Worker(
                self.queues[name],
                self.processor_for(name),
                definition.worker_options,
                dead_letter=self.dead_letter,
            )
            self.workers[name] = worker
            # Jobs that were active when the last process died go back to waiting
            await worker.check_stalled()
            await worker.start()

        await self.health_monitor.start()
        await self.heartbeat.start()
        await self.stats_logger.start()
        if self.enable_scheduler:
            await self.scheduler.start()
        logger.info("orchestrator_started", queues=list(self.queues), restored=restored)

    async def health_status(self) -> Dict[str, Any]:
        queues = {name: queue.counts() for name, queue in self.queues.items()}
        dead_letter = self.dead_letter.counts()
        heartbeat = await Heartbeat.read(self.settings.heartbeat_path)
        healthy = (
            self._started
            and not self._shutdown
            and all(w.is_running for w in self.workers.values())
            and all(c["waiting"] <= self.settings.queue_alert_threshold for c in queues.values())
        )
        return {
            "healthy": healthy,
            "timestamp": utc_now().isoformat(),
            "queues": queues,
            "workers": {name: dict(w.stats, running=w.is_running) for name, w in self.workers.items()},
            "dead_letter": dead_letter,
            "heartbeat": heartbeat,
            "recent_alerts": list(self.health_monitor.alerts)[-10:],
        }

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop cooperatively.

        No new jobs are taken, in-flight jobs finish or run into their lock
        timeout, then queues are closed and monitors stopped. Safe to call
        more than once.
        """
        if self._shutdown:
            return
        self._shutdown = True
        logger.info("orchestrator_shutting_down")

        await self.scheduler.stop()
        for queue in self.queues.values():
            queue.pause()
        await asyncio.gather(*(w.stop(timeout) for w in self.workers.values()))
        for queue in self.queues.values():
            await queue.close()
        await self.health_monitor.stop()
        await self.heartbeat.stop()
        await self.stats_logger.stop()
        logger.info("orchestrator_stopped", dead_letter=self.dead_letter.get_stats())

    async def _mail_alert(self, alert: Dict[str, Any]) -> None:
        email_queue = self.context.email_queue
        if email_queue is None or not self.settings.admin_emails:
            return
        lines: List[str] = [f"{key}: {value}" for key, value in alert.items()]
        await email_queue.queue_email(
            self.settings.admin_emails,
            f"Queue alert: {alert['type']} on {alert['queue']}",
            "\n".join(lines),
        )
