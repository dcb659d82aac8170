"""
================================================================================
IN-PROCESS JOB QUEUE
================================================================================
Named queue with delayed retries, job locks and stalled-job detection.

Features:
- Priority then FIFO ordering of waiting jobs
- Idempotent enqueue by job id
- Lock tokens: only the worker holding a job's lock may finish it
- Stalled-job recovery: an expired lock sends the job back to waiting,
  up to a maximum stall count, then fails it
- Retention of finished jobs by age and count
- Optional durable store: every state change is written through, and
  ``restore()`` reloads the queue after a restart
- Injectable clock so timing-sensitive paths are deterministic in tests
"""

import asyncio
import heapq
import itertools
import time
import traceback
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from docflow.queue.jobs import Job, JobOptions, JobState, KeepPolicy
from docflow.utils.errors import StorageError
from docflow.utils.logger import get_logger
from docflow.utils.storage import JobRepository

logger = get_logger(__name__)

STALLED_REASON = "job stalled more than allowable limit"


class JobQueue:
    """
    A single named queue.

    The working set lives in memory and every mutation happens on the event
    loop, so no two workers can take the same job. With a ``store``, each
    change is also written to it so pending work outlives the process.
    """

    def __init__(
        self,
        name: str,
        default_options: Optional[JobOptions] = None,
        clock: Callable[[], float] = time.time,
        store: Optional[JobRepository] = None,
    ):
        self.name = name
        self.default_options = default_options or JobOptions()
        self.clock = clock
        self.store = store
        self._jobs: Dict[str, Job] = {}
        self._waiting: List[Tuple[int, int, str]] = []
        self._sequence = itertools.count()
        self._available = asyncio.Event()
        self._paused = False
        self._closed = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def add(
        self,
        name: str,
        data: Dict[str, Any],
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
        options: Optional[JobOptions] = None,
    ) -> Job:
        """
        Enqueue a job.

        Adding a job whose id is already present returns the existing job
        unchanged, so repeated producers converge on one job.
        """
        if self._closed:
            raise RuntimeError(f"Queue {self.name} is closed")

        opts = (options or self.default_options).with_overrides(
            job_id=job_id, priority=priority, delay=delay
        )
        job_id = opts.job_id or str(uuid4())
        existing = self._jobs.get(job_id)
        if existing is not None:
            logger.debug("job_exists", queue=self.name, job_id=job_id, state=existing.state.value)
            return existing

        now = self.clock()
        job = Job(id=job_id, queue_name=self.name, name=name, data=data, opts=opts, timestamp=now)
        self._jobs[job_id] = job
        if opts.delay > 0:
            job.state = JobState.DELAYED
            job.ready_at = now + opts.delay
        else:
            self._push_waiting(job)

        await self._save(job)
        logger.debug("job_added", queue=self.name, job_id=job_id, name=name, state=job.state.value)
        return job

    def _push_waiting(self, job: Job) -> None:
        job.state = JobState.WAITING
        job.ready_at = None
        heapq.heappush(self._waiting, (job.opts.priority, next(self._sequence), job.id))
        self._available.set()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _save(self, job: Job) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(job.to_record())
        except StorageError as e:
            logger.error("job_persist_failed", queue=self.name, job_id=job.id, error=str(e))

    async def _forget(self, job_ids: List[str]) -> None:
        if self.store is None or not job_ids:
            return
        try:
            await self.store.delete(self.name, job_ids)
        except StorageError as e:
            logger.error("job_forget_failed", queue=self.name, job_ids=job_ids, error=str(e))

    async def restore(self) -> int:
        """
        Reload this queue's jobs from the store after a restart.

        Waiting and delayed jobs resume as they were. A job that was active
        lost its worker with the old process, so its lock is treated as
        expired and the next stall check requeues it under the same id.
        Returns the number of jobs loaded.
        """
        if self.store is None:
            return 0
        now = self.clock()
        loaded = 0
        for record in await self.store.load(self.name):
            job = Job.from_record(record)
            if job.id in self._jobs:
                continue
            self._jobs[job.id] = job
            loaded += 1
            if job.state == JobState.WAITING:
                self._push_waiting(job)
            elif job.state == JobState.ACTIVE:
                job.lock_token = None
                job.lock_expires_at = now
        if loaded:
            logger.info("queue_restored", queue=self.name, jobs=loaded, **self.counts())
        return loaded

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def promote_delayed(self, now: Optional[float] = None) -> int:
        """Move delayed jobs whose time has come back to waiting."""
        now = self.clock() if now is None else now
        promoted = 0
        for job in list(self._jobs.values()):
            if job.state == JobState.DELAYED and job.ready_at is not None and job.ready_at <= now:
                self._push_waiting(job)
                promoted += 1
        return promoted

    async def get_next(self, token: str, lock_duration: float) -> Optional[Job]:
        """Take the next waiting job and lock it for ``lock_duration`` seconds."""
        if self._paused or self._closed:
            return None
        self.promote_delayed()
        while self._waiting:
            _, _, job_id = heapq.heappop(self._waiting)
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.WAITING:
                continue
            now = self.clock()
            job.state = JobState.ACTIVE
            job.lock_token = token
            job.lock_expires_at = now + lock_duration
            job.processed_on = now
            job.attempts_started += 1
            await self._save(job)
            return job
        self._available.clear()
        return None

    async def wait_for_job(self, timeout: float) -> None:
        """Sleep until a job may be available or ``timeout`` passes."""
        try:
            await asyncio.wait_for(self._available.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    def _owns(self, job: Job, token: str) -> bool:
        current = self._jobs.get(job.id)
        return (
            current is job
            and job.state == JobState.ACTIVE
            and job.lock_token == token
        )

    async def extend_lock(self, job: Job, token: str, duration: float) -> bool:
        if not self._owns(job, token):
            return False
        job.lock_expires_at = self.clock() + duration
        return True

    async def complete(self, job: Job, token: str, result: Any = None) -> bool:
        """Mark an active job completed. False when the lock was lost."""
        if not self._owns(job, token):
            return False
        job.state = JobState.COMPLETED
        job.return_value = result
        job.finished_on = self.clock()
        self._release(job)
        await self._save(job)
        await self._forget(self._trim(JobState.COMPLETED, job.opts.remove_on_complete))
        return True

    async def fail(self, job: Job, token: str, error: BaseException) -> Optional[JobState]:
        """
        Record a failed attempt.

        Returns ``DELAYED`` when the job will be retried, ``FAILED`` when the
        failure is terminal, or None when the lock was already lost.
        """
        if not self._owns(job, token):
            return None
        now = self.clock()
        job.attempts_made += 1
        job.failed_reason = str(error) or type(error).__name__
        job.stacktrace.append(
            "".join(traceback.format_exception(type(error), error, error.__traceback__))
        )
        self._release(job)

        if job.opts.retry.should_retry(error, job.attempts_made):
            job.state = JobState.DELAYED
            job.ready_at = now + job.opts.retry.calculate_delay(job.attempts_made - 1)
            await self._save(job)
            return JobState.DELAYED

        job.state = JobState.FAILED
        job.finished_on = now
        await self._save(job)
        await self._forget(self._trim(JobState.FAILED, job.opts.remove_on_fail))
        return JobState.FAILED

    def _release(self, job: Job) -> None:
        job.lock_token = None
        job.lock_expires_at = None

    async def check_stalled(
        self,
        max_stalled_count: int,
        now: Optional[float] = None,
    ) -> List[Tuple[Job, bool]]:
        """
        Find active jobs whose lock expired.

        Each is either returned to waiting or, once it has stalled more than
        ``max_stalled_count`` times, failed. Returns ``(job, terminal)``
        pairs. A terminally stalled job has used all of its attempts.
        """
        now = self.clock() if now is None else now
        stalled = []
        for job in list(self._jobs.values()):
            if job.state != JobState.ACTIVE or job.lock_expires_at is None:
                continue
            if job.lock_expires_at > now:
                continue

            job.stalled_count += 1
            self._release(job)
            if job.stalled_count > max_stalled_count:
                job.state = JobState.FAILED
                job.failed_reason = STALLED_REASON
                job.attempts_made = max(job.attempts_made, job.opts.attempts)
                job.finished_on = now
                stalled.append((job, True))
            else:
                self._push_waiting(job)
                stalled.append((job, False))
            await self._save(job)
        return stalled

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_jobs(self, states: Iterable[JobState]) -> List[Job]:
        wanted = set(states)
        jobs = [job for job in self._jobs.values() if job.state in wanted]
        jobs.sort(key=lambda j: j.timestamp)
        return jobs

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        return counts

    async def remove(self, job_id: str) -> bool:
        """Remove a job that is not currently being processed."""
        job = self._jobs.get(job_id)
        if job is None or job.state == JobState.ACTIVE:
            return False
        del self._jobs[job_id]
        await self._forget([job_id])
        return True

    async def retry_job(self, job_id: str) -> bool:
        """Send a failed job back to waiting with its attempt count reset."""
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.FAILED:
            return False
        job.attempts_made = 0
        job.stalled_count = 0
        job.failed_reason = None
        job.finished_on = None
        self._push_waiting(job)
        await self._save(job)
        return True

    def _trim(self, state: JobState, policy: KeepPolicy) -> List[str]:
        """Drop finished jobs outside the keep policy. Returns the removed ids."""
        removed = []
        finished = self.get_jobs([state])
        now = self.clock()
        if policy.age_seconds is not None:
            for job in finished:
                if job.finished_on is not None and now - job.finished_on > policy.age_seconds:
                    del self._jobs[job.id]
                    removed.append(job.id)
            finished = self.get_jobs([state])
        if policy.count is not None and len(finished) > policy.count:
            finished.sort(key=lambda j: j.finished_on or 0)
            for job in finished[: len(finished) - policy.count]:
                del self._jobs[job.id]
                removed.append(job.id)
        return removed

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._available.set()

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def close(self) -> None:
        self._closed = True
        self._available.set()
