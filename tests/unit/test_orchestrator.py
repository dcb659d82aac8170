"""
Unit tests for the orchestrator that wires queues, workers and monitors.
"""

import asyncio

import pytest

from docflow.core.config import reload_settings
from docflow.models import DocumentStatus, InvoiceImportPayload
from docflow.queue.jobs import BULK_PARSING, EMAIL, FILE_IMPORT, INVOICE_IMPORT, QUEUE_NAMES, JobState
from docflow.queue.orchestrator import Orchestrator, queue_definitions
from docflow.utils.errors import UnrecoverableJobError


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.fixture
async def orchestrator(settings, storage, sender):
    orchestrator = Orchestrator(settings, storage, sender=sender, enable_scheduler=False)
    yield orchestrator
    await orchestrator.shutdown(timeout=1)


class TestQueueDefinitions:
    """Tests for per-queue options."""

    def test_every_queue_defined(self, settings):
        assert set(queue_definitions(settings)) == set(QUEUE_NAMES)

    def test_settings_applied(self, monkeypatch):
        monkeypatch.setenv("EMAIL_MAX_ATTEMPTS", "4")
        monkeypatch.setenv("INVOICE_IMPORT_CONCURRENCY", "5")
        monkeypatch.setenv("MAX_STALLED_COUNT", "1")
        settings = reload_settings()

        definitions = queue_definitions(settings)

        assert definitions[EMAIL].job_options.attempts == 4
        assert definitions[INVOICE_IMPORT].worker_options.concurrency == 5
        assert definitions[FILE_IMPORT].worker_options.max_stalled_count == 1
        assert definitions[FILE_IMPORT].job_options.attempts == 3
        assert definitions[BULK_PARSING].job_options.attempts == 2


class TestOrchestrator:
    """Tests for the running system."""

    async def test_invalid_payload_is_unrecoverable(self, orchestrator):
        job = await orchestrator.queues[INVOICE_IMPORT].add(INVOICE_IMPORT, {"fileName": "x.pdf"})

        with pytest.raises(UnrecoverableJobError):
            await orchestrator.processor_for(INVOICE_IMPORT)(job)

    async def test_payload_for_other_queue_is_unrecoverable(self, orchestrator):
        job = await orchestrator.queues[EMAIL].add(EMAIL, {"kind": "scheduled-tasks", "taskName": "x"})

        with pytest.raises(UnrecoverableJobError):
            await orchestrator.processor_for(EMAIL)(job)

    async def test_start_health_and_shutdown(self, orchestrator):
        await orchestrator.start()

        status = await orchestrator.health_status()

        assert status["healthy"] is True
        assert set(status["queues"]) == set(QUEUE_NAMES)
        assert all(worker["running"] for worker in status["workers"].values())

        await orchestrator.shutdown(timeout=1)
        await orchestrator.shutdown(timeout=1)

        assert (await orchestrator.health_status())["healthy"] is False
        assert not any(worker.is_running for worker in orchestrator.workers.values())

    async def test_processes_email_end_to_end(self, orchestrator, storage, sender):
        await orchestrator.start()

        log = await orchestrator.context.email_queue.queue_email(["ap@example.com"], "Hello", "Body")
        await wait_until(lambda: len(sender.sent) == 1)
        job = orchestrator.queues[EMAIL].get_job(f"email_{log.id}")
        await wait_until(lambda: job.state == JobState.COMPLETED)

        assert (await storage.email_logs.get(log.id)).status.value == "SENT"

    async def test_processes_invoice_end_to_end(self, orchestrator, settings, storage, monkeypatch):
        async def read_text(path, file_kind):
            return "TAX INVOICE\nInvoice No: 5555\nAccount No: 77777\nTotal: £9.99"

        monkeypatch.setattr(orchestrator.context.extractor, "read_text", read_text)
        path = settings.inbound_path / "e2e.pdf"
        path.write_bytes(b"end to end")
        await orchestrator.start()

        payload = InvoiceImportPayload(file_path=str(path), file_name=path.name)
        job = await orchestrator.queues[INVOICE_IMPORT].add(INVOICE_IMPORT, payload.to_job_data())
        await wait_until(lambda: job.state == JobState.COMPLETED)

        record = await storage.documents.get(job.return_value["document_id"])
        assert record.status == DocumentStatus.UNALLOCATED
        assert not path.exists()

    async def test_terminal_failure_dead_lettered(self, orchestrator):
        await orchestrator.start()

        job = await orchestrator.queues[INVOICE_IMPORT].add(INVOICE_IMPORT, {"fileName": "broken"})
        await wait_until(lambda: job.state == JobState.FAILED)
        await wait_until(lambda: orchestrator.dead_letter.counts().get(INVOICE_IMPORT) == 1)

        record = orchestrator.dead_letter.list_records(INVOICE_IMPORT)[0]
        assert record.error_type == "UnrecoverableJobError"
        assert job.attempts_made == 1


class TestRestart:
    """Tests for picking up work left by a previous process."""

    async def test_waiting_email_sent_after_restart(self, settings, storage, sender):
        first = Orchestrator(settings, storage, sender=sender, enable_scheduler=False)
        log = await first.context.email_queue.queue_email(["ap@example.com"], "Hello", "Body")
        await first.shutdown(timeout=1)

        second = Orchestrator(settings, storage, sender=sender, enable_scheduler=False)
        try:
            await second.start()
            await wait_until(lambda: len(sender.sent) == 1)
        finally:
            await second.shutdown(timeout=1)

        assert (await storage.email_logs.get(log.id)).status.value == "SENT"

    async def test_interrupted_import_resumed_after_restart(self, settings, storage, sender, monkeypatch):
        """Test an import that was active when the process died runs again under its id."""
        path = settings.inbound_path / "restart.pdf"
        path.write_bytes(b"restart me")
        payload = InvoiceImportPayload(file_path=str(path), file_name=path.name)

        first = Orchestrator(settings, storage, sender=sender, enable_scheduler=False)
        added = await first.queues[INVOICE_IMPORT].add(INVOICE_IMPORT, payload.to_job_data())
        await first.queues[INVOICE_IMPORT].get_next("lost-worker", 30)
        await first.shutdown(timeout=1)

        second = Orchestrator(settings, storage, sender=sender, enable_scheduler=False)

        async def read_text(path, file_kind):
            return "TAX INVOICE\nInvoice No: 8080\nAccount No: 77777\nTotal: £3.50"

        monkeypatch.setattr(second.context.extractor, "read_text", read_text)
        try:
            await second.start()
            job = second.queues[INVOICE_IMPORT].get_job(added.id)
            await wait_until(lambda: job.state == JobState.COMPLETED)
        finally:
            await second.shutdown(timeout=1)

        assert job.stalled_count == 1
        record = await storage.documents.get(job.return_value["document_id"])
        assert record.status == DocumentStatus.UNALLOCATED
        assert not path.exists()
