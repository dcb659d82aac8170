"""
Unit tests for the job queue, worker and dead-letter queue.
"""

import asyncio

import pytest

from docflow.queue.dead_letter import DeadLetterQueue
from docflow.queue.jobs import JobOptions, JobState, KeepPolicy
from docflow.queue.job_queue import STALLED_REASON, JobQueue
from docflow.queue.retry import RetryConfig
from docflow.queue.worker import Worker, WorkerEvent, WorkerOptions
from docflow.utils.errors import UnrecoverableJobError


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it holds or fail after ``timeout`` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def queue(clock):
    return JobQueue("work", clock=clock)


class TestRetryConfig:
    """Tests for backoff calculation."""

    def test_exponential_delays(self):
        config = RetryConfig(base_delay=1.0)

        assert [config.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay(self):
        assert RetryConfig(base_delay=60.0, max_delay=3600.0).calculate_delay(10) == 3600.0

    def test_jitter_stays_in_bounds(self):
        config = RetryConfig(base_delay=10.0, jitter=True, jitter_max=0.5)
        for _ in range(20):
            assert 5.0 <= config.calculate_delay(0) <= 15.0

    def test_unrecoverable_never_retried(self):
        config = RetryConfig(max_attempts=5)

        assert config.should_retry(RuntimeError(), 1)
        assert not config.should_retry(UnrecoverableJobError("bad"), 1)
        assert not config.should_retry(RuntimeError(), 5)


class TestJobQueue:
    """Tests for queue ordering, locking and retries."""

    async def test_add_is_idempotent_by_id(self, queue):
        first = await queue.add("task", {"n": 1}, job_id="job-1")
        second = await queue.add("task", {"n": 2}, job_id="job-1")

        assert second is first
        assert first.data == {"n": 1}
        assert queue.counts()["waiting"] == 1

    async def test_priority_then_fifo(self, queue):
        await queue.add("task", {}, job_id="low-a", priority=5)
        await queue.add("task", {}, job_id="high", priority=1)
        await queue.add("task", {}, job_id="low-b", priority=5)

        order = [(await queue.get_next("t", 30)).id for _ in range(3)]

        assert order == ["high", "low-a", "low-b"]
        assert await queue.get_next("t", 30) is None

    async def test_delayed_job(self, queue, clock):
        job = await queue.add("task", {}, delay=5)

        assert job.state == JobState.DELAYED
        assert await queue.get_next("t", 30) is None
        clock.advance(5)
        assert (await queue.get_next("t", 30)).id == job.id

    async def test_retry_backoff_then_failed(self, queue, clock):
        """Test a failing job is delayed 1s then 2s, then fails on its third attempt."""
        job = await queue.add("task", {})
        delays = []
        for _ in range(2):
            taken = await queue.get_next("t", 30)
            assert await queue.fail(taken, "t", RuntimeError("boom")) == JobState.DELAYED
            delays.append(job.ready_at - clock())
            clock.advance(delays[-1])

        taken = await queue.get_next("t", 30)
        assert await queue.fail(taken, "t", RuntimeError("boom")) == JobState.FAILED

        assert delays == [1.0, 2.0]
        assert job.attempts_made == 3
        assert job.failed_reason == "boom"
        assert len(job.stacktrace) == 3

    async def test_unrecoverable_fails_immediately(self, queue):
        await queue.add("task", {})
        job = await queue.get_next("t", 30)

        state = await queue.fail(job, "t", UnrecoverableJobError("bad payload"))

        assert state == JobState.FAILED
        assert job.attempts_made == 1

    async def test_wrong_token_cannot_finish(self, queue):
        await queue.add("task", {})
        job = await queue.get_next("owner", 30)

        assert await queue.complete(job, "intruder") is False
        assert await queue.fail(job, "intruder", RuntimeError()) is None
        assert await queue.complete(job, "owner", {"ok": True}) is True
        assert job.return_value == {"ok": True}

    async def test_completed_jobs_trimmed_by_count(self, clock):
        queue = JobQueue("trimmed", JobOptions(remove_on_complete=KeepPolicy(count=2)), clock=clock)
        for n in range(4):
            await queue.add("task", {"n": n}, job_id=f"job-{n}")
            job = await queue.get_next("t", 30)
            clock.advance(1)
            await queue.complete(job, "t")

        assert queue.counts()["completed"] == 2
        assert queue.get_job("job-0") is None
        assert queue.get_job("job-3") is not None

    async def test_failed_jobs_trimmed_by_age(self, clock):
        queue = JobQueue(
            "aged",
            JobOptions(retry=RetryConfig(max_attempts=1), remove_on_fail=KeepPolicy(age_seconds=60)),
            clock=clock,
        )
        await queue.add("task", {}, job_id="old")
        await queue.fail(await queue.get_next("t", 30), "t", RuntimeError())
        clock.advance(120)
        await queue.add("task", {}, job_id="new")
        await queue.fail(await queue.get_next("t", 30), "t", RuntimeError())

        assert queue.get_job("old") is None
        assert queue.get_job("new").state == JobState.FAILED

    async def test_retry_and_remove(self, queue):
        await queue.add("task", {}, job_id="j", options=JobOptions(retry=RetryConfig(max_attempts=1)))
        job = await queue.get_next("t", 30)
        await queue.fail(job, "t", RuntimeError())

        assert await queue.retry_job("j") is True
        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert await queue.remove("j") is True
        assert queue.get_job("j") is None

    async def test_paused_queue_hands_out_nothing(self, queue):
        await queue.add("task", {})
        queue.pause()

        assert await queue.get_next("t", 30) is None
        queue.resume()
        assert await queue.get_next("t", 30) is not None

    async def test_closed_queue_rejects_jobs(self, queue):
        await queue.close()

        with pytest.raises(RuntimeError):
            await queue.add("task", {})


class TestStalledJobs:
    """Tests for lock expiry and stalled-job recovery."""

    async def test_stalled_job_requeued_then_dead_lettered(self, queue, clock, tmp_path):
        """Test a job whose lock keeps expiring is requeued twice, then failed with all attempts used."""
        dead_letter = DeadLetterQueue(str(tmp_path / "dlq"))
        worker = Worker(
            queue,
            processor=lambda job: None,
            options=WorkerOptions(lock_duration=10, max_stalled_count=2),
            dead_letter=dead_letter,
        )
        events = []
        worker.on(lambda event, job, details: events.append(event))
        job = await queue.add("task", {"file": "a.pdf"})

        for expected_state in (JobState.WAITING, JobState.WAITING, JobState.FAILED):
            taken = await queue.get_next("crashed-worker", 10)
            assert taken is job
            clock.advance(11)
            stalled = await worker.check_stalled()
            assert stalled == [job]
            assert job.state == expected_state

        assert job.stalled_count == 3
        assert job.failed_reason == STALLED_REASON
        assert job.attempts_made == 3
        assert events.count(WorkerEvent.STALLED) == 3
        assert WorkerEvent.DEAD_LETTERED in events

        records = dead_letter.list_records("work")
        assert len(records) == 1
        assert records[0].attempts_made == 3
        assert records[0].error_type == "Stalled"
        assert records[0].payload_snapshot == {"file": "a.pdf"}

    async def test_live_lock_not_stalled(self, queue, clock):
        await queue.add("task", {})
        job = await queue.get_next("t", 10)
        clock.advance(5)

        assert await queue.check_stalled(2) == []
        assert await queue.extend_lock(job, "t", 10) is True
        clock.advance(8)
        assert await queue.check_stalled(2) == []

    async def test_late_completion_after_stall_is_rejected(self, queue, clock):
        await queue.add("task", {})
        job = await queue.get_next("slow", 10)
        clock.advance(11)
        await queue.check_stalled(2)

        assert await queue.complete(job, "slow") is False


class TestJobPersistence:
    """Tests for writing jobs through to storage and reloading them."""

    async def test_pending_jobs_survive_restart(self, storage, clock):
        """
        Test waiting, delayed and active jobs reload after a restart.

        The job that was active when the process died comes back stalled and
        is requeued under its own id by the next stall check.
        """
        options = JobOptions(retry=RetryConfig(max_attempts=3, base_delay=5.0))
        before = JobQueue("import", options, clock=clock, store=storage.jobs)
        await before.add("task", {"file": "active.pdf"}, job_id="active")
        await before.add("task", {"file": "waiting.pdf"}, job_id="waiting")
        await before.add("task", {"file": "later.pdf"}, job_id="later", delay=60)
        await before.get_next("old-worker", 30)

        after = JobQueue("import", options, clock=clock, store=storage.jobs)
        assert await after.restore() == 3

        assert after.get_job("waiting").state == JobState.WAITING
        assert after.get_job("later").state == JobState.DELAYED
        assert after.get_job("active").opts.retry.base_delay == 5.0
        stalled = await after.check_stalled(max_stalled_count=2)
        assert [(job.id, terminal) for job, terminal in stalled] == [("active", False)]

        taken = [await after.get_next("new-worker", 30) for _ in range(2)]
        assert sorted(job.id for job in taken) == ["active", "waiting"]
        resumed = after.get_job("active")
        assert resumed.data == {"file": "active.pdf"}
        assert resumed.stalled_count == 1
        assert resumed.attempts_started == 2

    async def test_finished_and_removed_jobs_leave_the_store(self, storage, clock):
        queue = JobQueue(
            "trimmed",
            JobOptions(remove_on_complete=KeepPolicy(count=1)),
            clock=clock,
            store=storage.jobs,
        )
        for n in range(3):
            await queue.add("task", {}, job_id=f"job-{n}")
            job = await queue.get_next("t", 30)
            clock.advance(1)
            await queue.complete(job, "t", {"n": n})
        await queue.add("task", {}, job_id="dropped")
        await queue.remove("dropped")

        stored = await storage.jobs.load("trimmed")

        assert [r["id"] for r in stored] == ["job-2"]
        assert stored[0]["state"] == JobState.COMPLETED.value
        assert stored[0]["return_value"] == {"n": 2}

    async def test_queues_do_not_share_rows(self, storage, clock):
        first = JobQueue("first", clock=clock, store=storage.jobs)
        await first.add("task", {}, job_id="same-id")

        second = JobQueue("second", clock=clock, store=storage.jobs)

        assert await second.restore() == 0
        assert await storage.jobs.get("same-id", queue_name="first") is not None


class TestWorker:
    """Tests for the worker loop with a real clock."""

    async def test_processes_and_retries(self, tmp_path):
        queue = JobQueue("live", JobOptions(retry=RetryConfig(max_attempts=3, base_delay=0.01)))
        attempts = []

        async def processor(job):
            attempts.append(job.id)
            if len(attempts) == 1:
                raise RuntimeError("first try fails")
            return {"done": job.data["n"]}

        worker = Worker(queue, processor, WorkerOptions(concurrency=2, poll_interval=0.01))
        await worker.start()
        try:
            job = await queue.add("task", {"n": 7})
            await wait_until(lambda: job.state == JobState.COMPLETED)
        finally:
            await worker.stop(timeout=1)

        assert job.return_value == {"done": 7}
        assert job.attempts_made == 1
        assert worker.stats["retried"] == 1
        assert worker.stats["completed"] == 1
        assert not worker.is_running

    async def test_terminal_failure_dead_lettered(self, tmp_path):
        queue = JobQueue("live", JobOptions(retry=RetryConfig(max_attempts=1)))
        dead_letter = DeadLetterQueue(str(tmp_path / "dlq"))

        async def processor(job):
            raise ValueError("cannot parse")

        worker = Worker(queue, processor, WorkerOptions(poll_interval=0.01), dead_letter=dead_letter)
        await worker.start()
        try:
            await queue.add("task", {"n": 1})
            await wait_until(lambda: worker.stats["dead_lettered"] == 1)
        finally:
            await worker.stop(timeout=1)

        record = dead_letter.list_records()[0]
        assert record.error_type == "ValueError"
        assert record.failure_reason == "cannot parse"

    async def test_listener_errors_do_not_stop_processing(self):
        queue = JobQueue("live")

        def broken_listener(event, job, details):
            raise RuntimeError("listener bug")

        worker = Worker(queue, lambda job: asyncio.sleep(0), WorkerOptions(poll_interval=0.01))
        worker.on(broken_listener)
        await worker.start()
        try:
            job = await queue.add("task", {})
            await wait_until(lambda: job.state == JobState.COMPLETED)
        finally:
            await worker.stop(timeout=1)


class TestDeadLetterQueue:
    """Tests for dead-letter persistence and replay."""

    async def failed_job(self, queue):
        await queue.add("parse", {"filePath": "/tmp/x.pdf"}, options=JobOptions(retry=RetryConfig(max_attempts=1)))
        job = await queue.get_next("t", 30)
        await queue.fail(job, "t", RuntimeError("boom"))
        return job

    async def test_records_survive_restart(self, queue, tmp_path):
        path = str(tmp_path / "dlq")
        job = await self.failed_job(queue)
        record = await DeadLetterQueue(path).add(job, RuntimeError("boom"))

        reloaded = DeadLetterQueue(path)
        await reloaded.initialize()

        restored = reloaded.get(record.id)
        assert restored == record
        assert reloaded.counts() == {"work": 1}

    async def test_replay_into_original_queue(self, queue, tmp_path):
        dead_letter = DeadLetterQueue(str(tmp_path / "dlq"))
        record = await dead_letter.add(await self.failed_job(queue), RuntimeError("boom"))

        replayed = await dead_letter.replay(record.id, queue)

        assert replayed.state == JobState.WAITING
        assert replayed.data == {"filePath": "/tmp/x.pdf"}
        assert replayed.id != record.original_job_id
        assert dead_letter.get(record.id) is not None
        assert dead_letter.get_stats()["total_replayed"] == 1

    async def test_replay_rejects_other_queue(self, queue, tmp_path):
        dead_letter = DeadLetterQueue(str(tmp_path / "dlq"))
        record = await dead_letter.add(await self.failed_job(queue), RuntimeError("boom"))

        with pytest.raises(ValueError):
            await dead_letter.replay(record.id, JobQueue("other"))
        assert await dead_letter.replay("missing", queue) is None
