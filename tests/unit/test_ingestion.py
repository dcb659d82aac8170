"""
Unit tests for hashing, deduplication, retention, routing and run stats.
"""

import hashlib
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from docflow.ingestion.dedup import DeduplicationIndex
from docflow.ingestion.hashing import hash_bytes, hash_file, hash_file_sync
from docflow.ingestion.retention import (
    INVOICE_DATE,
    calculate_expiry,
    deleted_beyond_window,
    retention_start,
    should_delete,
)
from docflow.ingestion.router import FileRouter, TerminalState
from docflow.ingestion.run_stats import RunStatsStore, ScanResult
from docflow.models import DocumentRecord, DocumentStatus
from docflow.utils.errors import SourceError

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestHashing:
    """Tests for content digests."""

    async def test_hash_file_matches_sha256(self, tmp_path):
        data = b"%PDF-1.4 sample" * 10000
        path = tmp_path / "a.pdf"
        path.write_bytes(data)

        expected = hashlib.sha256(data).hexdigest()

        assert await hash_file(path) == expected
        assert hash_file_sync(path) == expected
        assert hash_bytes(data) == expected

    async def test_identical_content_same_digest(self, tmp_path):
        """Test the digest ignores the file name."""
        (tmp_path / "one.pdf").write_bytes(b"same bytes")
        (tmp_path / "two.pdf").write_bytes(b"same bytes")

        assert await hash_file(tmp_path / "one.pdf") == await hash_file(tmp_path / "two.pdf")


class TestRetention:
    """Tests for retention expiry calculation."""

    def test_expiry_is_midnight(self):
        start = datetime(2024, 1, 1, 15, 30, tzinfo=timezone.utc)

        expiry = calculate_expiry(start, 30)

        assert expiry == datetime(2024, 1, 31, 0, 0, tzinfo=timezone.utc)

    def test_expiry_disabled(self):
        assert calculate_expiry(NOW, None) is None
        assert calculate_expiry(NOW, 0) is None
        assert calculate_expiry(None, 30) is None

    def test_retention_start_basis(self):
        """Test invoice date falls back to period end, then upload date."""
        record = DocumentRecord(content_digest="d", file_name="a.pdf", created_at=NOW)

        assert retention_start(record) == NOW
        assert retention_start(record, INVOICE_DATE) == NOW

        record.period_end = date(2024, 2, 29)
        assert retention_start(record, INVOICE_DATE).date() == date(2024, 2, 29)

        record.issue_date = date(2024, 2, 1)
        assert retention_start(record, INVOICE_DATE).date() == date(2024, 2, 1)

    def test_should_delete(self):
        record = DocumentRecord(content_digest="d", file_name="a.pdf", created_at=NOW - timedelta(days=40))

        assert should_delete(record, 30, NOW) is True
        assert should_delete(record, 60, NOW) is False
        assert should_delete(record, None, NOW) is False

        record.deleted_at = NOW
        assert should_delete(record, 30, NOW) is False

    def test_deleted_beyond_window(self):
        record = DocumentRecord(content_digest="d", file_name="a.pdf", deleted_at=NOW - timedelta(days=10))

        assert deleted_beyond_window(record, 7, NOW) is True
        assert deleted_beyond_window(record, 30, NOW) is False
        assert deleted_beyond_window(record, None, NOW) is False


class TestDeduplicationIndex:
    """Tests for duplicate detection against stored records."""

    async def test_live_record_blocks(self, storage):
        original = DocumentRecord(content_digest="d1", file_name="a.pdf", status=DocumentStatus.PARSED)
        await storage.documents.create(original)
        index = DeduplicationIndex(storage.documents)

        found = await index.find_original("d1")

        assert found.id == original.id
        assert await index.is_duplicate("other") is False

    async def test_duplicate_records_do_not_block(self, storage):
        await storage.documents.create(DocumentRecord(
            content_digest="d1", file_name="b.pdf", status=DocumentStatus.DUPLICATE,
        ))
        index = DeduplicationIndex(storage.documents)

        assert await index.find_original("d1") is None

    async def test_failed_record_blocks(self, storage):
        """Test content that failed to import is not taken in again."""
        failed = DocumentRecord(content_digest="d1", file_name="a.pdf", status=DocumentStatus.FAILED)
        await storage.documents.create(failed)
        index = DeduplicationIndex(storage.documents)

        assert (await index.find_original("d1")).id == failed.id

    async def test_deleted_failed_record_follows_window(self, storage):
        await storage.documents.create(DocumentRecord(
            content_digest="d1", file_name="a.pdf",
            status=DocumentStatus.FAILED, deleted_at=NOW - timedelta(days=40),
        ))

        assert await DeduplicationIndex(storage.documents, retention_days=30).is_duplicate("d1", NOW) is False

    async def test_deleted_record_blocks_forever_without_window(self, storage):
        record = DocumentRecord(
            content_digest="d1", file_name="a.pdf",
            status=DocumentStatus.PARSED, deleted_at=NOW - timedelta(days=365),
        )
        await storage.documents.create(record)

        assert await DeduplicationIndex(storage.documents).is_duplicate("d1", NOW) is True

    async def test_deleted_record_released_after_window(self, storage):
        """Test re-upload is allowed once the deletion left the window."""
        old = DocumentRecord(
            content_digest="d1", file_name="a.pdf",
            status=DocumentStatus.PARSED, deleted_at=NOW - timedelta(days=10),
        )
        await storage.documents.create(old)
        index = DeduplicationIndex(storage.documents, retention_days=7)

        assert await index.is_duplicate("d1", NOW) is False
        assert await index.is_duplicate("d1", NOW - timedelta(days=5)) is True


class TestFileRouter:
    """Tests for date-partitioned, collision-safe moves."""

    @pytest.fixture
    def router(self, tmp_path):
        return FileRouter(tmp_path / "processed", tmp_path / "failed", clock=lambda: NOW)

    async def test_route_processed(self, router, tmp_path):
        source = tmp_path / "inv.pdf"
        source.write_bytes(b"x")

        target = await router.route(str(source), TerminalState.PROCESSED)

        assert Path(target) == tmp_path / "processed" / "2024-03-15" / "inv.pdf"
        assert not source.exists()

    async def test_route_duplicate(self, router, tmp_path):
        source = tmp_path / "inv.pdf"
        source.write_bytes(b"x")

        target = await router.route(str(source), TerminalState.DUPLICATE)

        assert Path(target).parent == tmp_path / "processed" / "duplicates" / "2024-03-15"

    async def test_collision_gets_timestamp_suffix(self, router, tmp_path):
        """Test an existing file is never overwritten."""
        first = tmp_path / "inv.pdf"
        first.write_bytes(b"first")
        first_target = await router.route(str(first), TerminalState.PROCESSED)

        second = tmp_path / "inv.pdf"
        second.write_bytes(b"second")
        second_target = await router.route(str(second), TerminalState.PROCESSED)

        stamp = int(NOW.timestamp() * 1000)
        assert Path(second_target).name == f"inv-{stamp}.pdf"
        assert Path(first_target).read_bytes() == b"first"
        assert Path(second_target).read_bytes() == b"second"

    async def test_failed_writes_sidecar(self, router, tmp_path):
        source = tmp_path / "bad.pdf"
        source.write_bytes(b"x")

        target = await router.route(str(source), TerminalState.FAILED, error="Cannot open PDF")

        sidecar = Path(target + ".error.txt")
        assert Path(target).parent == tmp_path / "failed" / "2024-03-15"
        assert sidecar.exists()
        content = sidecar.read_text()
        assert "Error: Cannot open PDF" in content
        assert NOW.isoformat() in content

    async def test_missing_file(self, router, tmp_path):
        with pytest.raises(SourceError):
            await router.route(str(tmp_path / "gone.pdf"), TerminalState.PROCESSED)

    async def test_route_updates_record(self, storage, tmp_path):
        router = FileRouter(tmp_path / "processed", tmp_path / "failed", storage.documents, clock=lambda: NOW)
        record = DocumentRecord(content_digest="d1", file_name="inv.pdf")
        await storage.documents.create(record)
        source = tmp_path / "inv.pdf"
        source.write_bytes(b"x")

        target = await router.route(str(source), TerminalState.PROCESSED, record=record)

        stored = await storage.documents.get(record.id)
        assert stored.physical_location == target


class TestRunStatsStore:
    """Tests for scan run statistics."""

    async def test_record_and_history(self, tmp_path):
        store = RunStatsStore(tmp_path / "stats.json", history_size=2)

        for queued in (1, 2, 3):
            result = ScanResult(queued=queued, scanned=queued, started_at=NOW)
            result.finished_at = NOW + timedelta(seconds=2)
            await store.record(result)

        data = await store.load()
        last = await store.last()
        assert last["queued"] == 3
        assert last["duration_ms"] == 2000
        assert [h["queued"] for h in data["history"]] == [3, 2]
        assert data["last_run"] == (NOW + timedelta(seconds=2)).isoformat()

    async def test_missing_file(self, tmp_path):
        store = RunStatsStore(tmp_path / "none.json")

        assert await store.last() is None
