"""
Pytest configuration and fixtures.
"""

import os
import tempfile
from typing import Dict

import pytest

# Logging is configured on first import of the package, which reads
# settings and creates their directories. Point them somewhere harmless.
_SESSION_DIR = tempfile.mkdtemp(prefix="docflow-tests-")
os.environ.setdefault("DATA_DIR", _SESSION_DIR)
os.environ.setdefault("DATABASE_PATH", os.path.join(_SESSION_DIR, "docflow.db"))
os.environ.setdefault("DLQ_STORAGE_PATH", os.path.join(_SESSION_DIR, "dlq"))
os.environ.setdefault("RUN_STATS_PATH", os.path.join(_SESSION_DIR, "run_stats.json"))
os.environ.setdefault("DOWNLOAD_DIR", os.path.join(_SESSION_DIR, "downloads"))
os.environ.setdefault("LOG_DIR", os.path.join(_SESSION_DIR, "logs"))


class FakeClock:
    """Manually advanced clock for queue timing."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeSender:
    """Email sender that records messages or raises ``error``."""

    provider = "smtp"

    def __init__(self):
        self.sent = []
        self.error = None

    async def send(self, email):
        from docflow.notify.senders import SendResult

        if self.error is not None:
            raise self.error
        self.sent.append(email)
        return SendResult(
            message_id=f"<{len(self.sent)}@test>",
            provider=self.provider,
            recipient_count=len(email.recipients),
        )


@pytest.fixture
def temp_dir(tmp_path):
    """Provide a temporary directory for tests."""
    return tmp_path


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Reset settings before each test."""
    # Import here to avoid circular imports
    from docflow.core.config import reload_settings

    # Set test environment
    monkeypatch.setenv("TEST_MODE", "true")
    monkeypatch.setenv("FTP_INBOUND_PATH", str(tmp_path / "inbound"))
    monkeypatch.setenv("FTP_PROCESSED_PATH", str(tmp_path / "processed"))
    monkeypatch.setenv("FTP_FAILED_PATH", str(tmp_path / "failed"))
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "data" / "docflow.db"))
    monkeypatch.setenv("DLQ_STORAGE_PATH", str(tmp_path / "data" / "dlq"))
    monkeypatch.setenv("RUN_STATS_PATH", str(tmp_path / "data" / "run_stats.json"))
    monkeypatch.setenv("DOWNLOAD_DIR", str(tmp_path / "data" / "downloads"))
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "data" / "logs"))
    (tmp_path / "inbound").mkdir()

    settings = reload_settings()

    yield settings


@pytest.fixture
def settings(reset_settings):
    return reset_settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
async def storage(tmp_path):
    """Connected SQLite storage in a temporary file."""
    from docflow.utils.storage import Storage

    storage = await Storage(tmp_path / "test.db").connect()
    yield storage
    await storage.close()


@pytest.fixture
def queues():
    """One in-memory queue per queue name."""
    from docflow.queue.jobs import QUEUE_NAMES
    from docflow.queue.job_queue import JobQueue

    return {name: JobQueue(name) for name in QUEUE_NAMES}


@pytest.fixture
def context(settings, storage, queues, sender):
    """Pipeline context wired to temporary folders, storage and a fake sender."""
    from docflow.jobs.context import PipelineContext

    return PipelineContext.build(settings, storage, queues, sender=sender)


@pytest.fixture
def document_text(context, monkeypatch) -> Dict[str, str]:
    """
    Map of file name to the text the extractor should read for it.

    Lets pipeline tests run on placeholder files instead of real PDFs.
    """
    texts: Dict[str, str] = {}

    async def read_text(path, file_kind):
        return texts.get(os.path.basename(str(path)), "")

    monkeypatch.setattr(context.extractor, "read_text", read_text)
    return texts
