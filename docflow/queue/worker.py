"""
Queue worker.

An explicit worker loop: up to ``concurrency`` jobs run at once, each
holding a lock that is renewed while the job body runs. A separate loop
looks for jobs whose lock expired and hands them back to the queue.

Every lifecycle step is reported as a ``WorkerEvent`` through one
channel: it is logged under the event name and passed to listeners.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from docflow.queue.dead_letter import DeadLetterQueue
from docflow.queue.jobs import Job, JobState
from docflow.queue.job_queue import JobQueue
from docflow.utils.logger import get_logger, job_log_context

logger = get_logger(__name__)

Processor = Callable[[Job], Awaitable[Any]]
Listener = Callable[["WorkerEvent", Job, Dict[str, Any]], Any]


class WorkerEvent(str, Enum):
    """Lifecycle events emitted by a worker."""
    ACTIVE = "job_active"
    COMPLETED = "job_completed"
    FAILED = "job_failed"
    RETRY_SCHEDULED = "job_retry_scheduled"
    STALLED = "job_stalled"
    DEAD_LETTERED = "job_dead_lettered"
    LOCK_LOST = "job_lock_lost"


@dataclass
class WorkerOptions:
    """Per-queue worker tuning."""
    concurrency: int = 1
    lock_duration: float = 60.0
    stalled_interval: float = 30.0
    max_stalled_count: int = 2
    poll_interval: float = 1.0
    lock_renew_time: Optional[float] = None

    @property
    def renew_every(self) -> float:
        return self.lock_renew_time or self.lock_duration / 2


class Worker:
    """Runs a processor over the jobs of one queue."""

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        options: Optional[WorkerOptions] = None,
        dead_letter: Optional[DeadLetterQueue] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.options = options or WorkerOptions()
        self.dead_letter = dead_letter
        self._listeners: List[Listener] = []
        self._running = False
        self._loops: List[asyncio.Task] = []
        self._in_flight: Dict[str, asyncio.Task] = {}
        self.stats = {
            "completed": 0,
            "failed": 0,
            "retried": 0,
            "stalled": 0,
            "dead_lettered": 0,
        }

    @property
    def name(self) -> str:
        return self.queue.name

    @property
    def is_running(self) -> bool:
        return self._running

    def on(self, listener: Listener) -> None:
        """Register a listener for every lifecycle event."""
        self._listeners.append(listener)

    async def _emit(self, event: WorkerEvent, job: Job, **details: Any) -> None:
        log = logger.warning if event in (
            WorkerEvent.FAILED, WorkerEvent.STALLED, WorkerEvent.LOCK_LOST
        ) else logger.info
        log(event.value, queue=self.queue.name, job_id=job.id, attempts_made=job.attempts_made, **details)

        for listener in self._listeners:
            try:
                result = listener(event, job, details)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("worker_listener_failed", event=event.value, error=str(e))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("worker_already_running", queue=self.queue.name)
            return
        self._running = True
        for slot in range(self.options.concurrency):
            self._loops.append(asyncio.create_task(self._run_loop(slot)))
        self._loops.append(asyncio.create_task(self._stall_loop()))
        logger.info(
            "worker_started",
            queue=self.queue.name,
            concurrency=self.options.concurrency,
            lock_duration=self.options.lock_duration,
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop taking new jobs and wait for in-flight ones.

        Jobs still running after ``timeout`` (default: the lock duration)
        are cancelled; their locks lapse and the stall check requeues them.
        """
        if not self._running and not self._loops:
            return
        self._running = False

        in_flight = list(self._in_flight.values())
        if in_flight:
            done, pending = await asyncio.wait(
                in_flight, timeout=timeout if timeout is not None else self.options.lock_duration
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        logger.info("worker_stopped", queue=self.queue.name, **self.stats)

    async def _run_loop(self, slot: int) -> None:
        token_prefix = f"{self.queue.name}:{slot}"
        while self._running:
            try:
                token = f"{token_prefix}:{uuid4()}"
                job = await self.queue.get_next(token, self.options.lock_duration)
                if job is None:
                    await self.queue.wait_for_job(self.options.poll_interval)
                    continue
                task = asyncio.create_task(self.process_job(job, token))
                self._in_flight[job.id] = task
                try:
                    await asyncio.shield(task)
                finally:
                    self._in_flight.pop(job.id, None)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_loop_error", queue=self.queue.name, error=str(e), exc_info=True)
                await asyncio.sleep(self.options.poll_interval)

    async def _stall_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.options.stalled_interval)
                await self.check_stalled()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("stall_check_error", queue=self.queue.name, error=str(e), exc_info=True)

    # ------------------------------------------------------------------
    # Job handling
    # ------------------------------------------------------------------

    async def process_job(self, job: Job, token: str) -> None:
        """Run the processor for one locked job and record the outcome."""
        with job_log_context(self.queue.name, job.id, job_name=job.name):
            await self._run_job(job, token)

    async def _run_job(self, job: Job, token: str) -> None:
        await self._emit(WorkerEvent.ACTIVE, job, attempt=job.attempts_made + 1)
        renewer = asyncio.create_task(self._renew_lock(job, token))
        try:
            result = await self.processor(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(job, token, e)
        else:
            if await self.queue.complete(job, token, result):
                self.stats["completed"] += 1
                await self._emit(WorkerEvent.COMPLETED, job)
            else:
                await self._emit(WorkerEvent.LOCK_LOST, job)
        finally:
            renewer.cancel()
            try:
                await renewer
            except asyncio.CancelledError:
                pass

    async def _renew_lock(self, job: Job, token: str) -> None:
        while True:
            await asyncio.sleep(self.options.renew_every)
            if not await self.queue.extend_lock(job, token, self.options.lock_duration):
                return

    async def _handle_failure(self, job: Job, token: str, error: Exception) -> None:
        state = await self.queue.fail(job, token, error)
        if state is None:
            await self._emit(WorkerEvent.LOCK_LOST, job, error=str(error))
            return
        if state == JobState.DELAYED:
            self.stats["retried"] += 1
            await self._emit(
                WorkerEvent.RETRY_SCHEDULED,
                job,
                error=str(error),
                retry_at=job.ready_at,
            )
            return

        self.stats["failed"] += 1
        await self._emit(WorkerEvent.FAILED, job, error=str(error), error_type=type(error).__name__)
        await self._dead_letter(job, error)

    async def _dead_letter(self, job: Job, error: Optional[BaseException]) -> None:
        if self.dead_letter is None:
            return
        try:
            record = await self.dead_letter.add(job, error)
        except OSError as e:
            logger.error("dead_letter_write_failed", queue=self.queue.name, job_id=job.id, error=str(e))
            return
        self.stats["dead_lettered"] += 1
        await self._emit(WorkerEvent.DEAD_LETTERED, job, record_id=record.id)

    async def check_stalled(self, now: Optional[float] = None) -> List[Job]:
        """Requeue or fail jobs whose lock expired. Returns the stalled jobs."""
        stalled = await self.queue.check_stalled(self.options.max_stalled_count, now)
        for job, terminal in stalled:
            self.stats["stalled"] += 1
            await self._emit(WorkerEvent.STALLED, job, stalled_count=job.stalled_count)
            if terminal:
                self.stats["failed"] += 1
                await self._emit(WorkerEvent.FAILED, job, error=job.failed_reason)
                await self._dead_letter(job, None)
        return [job for job, _ in stalled]
