"""
Source scanner.

One pass over a ``DocumentSource``. Candidates are handled in listing
order:

1. skip unsupported extensions and files younger than the minimum age
2. skip files a pending invoice-import job already covers (by name)
3. fetch and hash
4. skip content a pending job already covers (by digest)
5. duplicate content is archived straight away and recorded as a
   ``duplicate`` document; new content gets one invoice-import job with
   the digest attached. A ``processing`` record left behind by a dead
   process is not an original: its file is queued again under the job
   id that owns the record, so the import resumes

A failure on one file is recorded and the file is moved to the failed
folder; the scan carries on with the next file.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional

from docflow.ingestion.dedup import DeduplicationIndex, is_orphaned
from docflow.ingestion.hashing import hash_file
from docflow.ingestion.router import FileRouter, TerminalState
from docflow.ingestion.run_stats import RunStatsStore, ScanResult
from docflow.ingestion.sources import DocumentSource
from docflow.models import (
    CandidateFile,
    DocumentRecord,
    DocumentStatus,
    InvoiceImportPayload,
    utc_now,
)
from docflow.queue.jobs import INVOICE_IMPORT, PENDING_STATES, job_id_for_document
from docflow.queue.job_queue import JobQueue
from docflow.utils.logger import get_logger
from docflow.utils.storage import DocumentRepository

logger = get_logger(__name__)


class SourceScanner:
    def __init__(
        self,
        source: DocumentSource,
        documents: DocumentRepository,
        dedup: DeduplicationIndex,
        router: FileRouter,
        invoice_queue: JobQueue,
        run_stats: Optional[RunStatsStore] = None,
        min_file_age: float = 30.0,
        recent_window: float = 3600.0,
        extensions: Iterable[str] = (".pdf", ".xlsx", ".xls"),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.source = source
        self.documents = documents
        self.dedup = dedup
        self.router = router
        self.invoice_queue = invoice_queue
        self.run_stats = run_stats
        self.min_file_age = min_file_age
        self.recent_window = recent_window
        self.extensions = tuple(e.lower() for e in extensions)
        self.clock = clock

    def _pending(self):
        return self.invoice_queue.get_jobs(PENDING_STATES)

    def _pending_for_name(self, name: str) -> bool:
        return any(job.data.get("fileName") == name for job in self._pending())

    def _pending_for_digest(self, digest: str) -> bool:
        return any(job.data.get("contentDigest") == digest for job in self._pending())

    async def _in_flight_by_name(self, name: str, now: datetime) -> bool:
        since = now - timedelta(seconds=self.recent_window)
        recent = await self.documents.find_recent_by_name(name, since)
        pending = self._pending()
        return any(
            r.status == DocumentStatus.PROCESSING and not r.is_deleted and not is_orphaned(r, pending)
            for r in recent
        )

    async def scan(self) -> ScanResult:
        """Scan the source once. Returns the per-run counts."""
        result = ScanResult(source=self.source.kind.value, started_at=self.clock())
        try:
            candidates = await self.source.list_candidates()
        except Exception as e:
            result.add_error("*", f"Listing failed: {e}")
            result.finished_at = self.clock()
            await self._record(result)
            raise

        for candidate in candidates:
            if not candidate.display_name.lower().endswith(self.extensions):
                continue
            result.scanned += 1
            try:
                await self._handle(candidate, result)
            except Exception as e:
                logger.error("scan_file_failed", file_name=candidate.display_name, error=str(e), exc_info=True)
                result.add_error(candidate.display_name, str(e))
                await self._route_failed(candidate, str(e))

        result.finished_at = self.clock()
        logger.info(
            "scan_completed",
            source=result.source,
            scanned=result.scanned,
            queued=result.queued,
            duplicates=result.duplicates,
            skipped=result.skipped,
            errors=len(result.errors),
            duration_ms=result.duration_ms,
        )
        await self._record(result)
        return result

    async def _handle(self, candidate: CandidateFile, result: ScanResult) -> None:
        now = self.clock()
        name = candidate.display_name

        if candidate.age_seconds(now) < self.min_file_age:
            logger.debug("scan_skip_young", file_name=name)
            result.skipped += 1
            return
        if self._pending_for_name(name) or await self._in_flight_by_name(name, now):
            logger.debug("scan_skip_pending", file_name=name)
            result.skipped += 1
            return

        local_path = await self.source.fetch(candidate)
        digest = await hash_file(local_path)
        candidate = candidate.model_copy(update={"content_digest": digest})

        if self._pending_for_digest(digest):
            logger.debug("scan_skip_pending_digest", file_name=name)
            result.skipped += 1
            if self.source.is_remote:
                self._discard_download(local_path)
            return

        job_id = None
        original = await self.dedup.find_original(digest, now)
        if original is not None and is_orphaned(original, self._pending()):
            # Unfinished import from a process that died: resume its record
            owner = job_id_for_document(original.id)
            if owner is not None and self.invoice_queue.get_job(owner) is None:
                job_id = owner
            logger.info("scan_file_resumed", file_name=name, document_id=original.id)
        elif original is not None:
            await self._handle_duplicate(candidate, local_path, original)
            result.duplicates += 1
            return

        payload = InvoiceImportPayload(
            file_path=str(local_path),
            file_name=name,
            source_tag=self.source.kind.value,
            content_digest=digest,
        )
        job = await self.invoice_queue.add(INVOICE_IMPORT, payload.to_job_data(), job_id=job_id)
        result.queued += 1
        logger.info("scan_file_queued", file_name=name, job_id=job.id, content_digest=digest[:12])

        if self.source.is_remote:
            await self.source.archive(candidate, TerminalState.PROCESSED)

    async def _handle_duplicate(
        self,
        candidate: CandidateFile,
        local_path: Path,
        original: DocumentRecord,
    ) -> None:
        if self.source.is_remote:
            location = await self.source.archive(candidate, TerminalState.DUPLICATE)
            self._discard_download(local_path)
        else:
            location = await self.router.route(str(local_path), TerminalState.DUPLICATE)

        record = DocumentRecord(
            content_digest=candidate.content_digest,
            file_name=candidate.display_name,
            status=DocumentStatus.DUPLICATE,
            source_kind=self.source.kind,
            duplicate_of_id=original.id,
            failure_reason="duplicate",
            physical_location=location,
        )
        await self.documents.create(record)
        logger.info(
            "scan_file_duplicate",
            file_name=candidate.display_name,
            original_id=original.id,
            location=location,
        )

    async def _route_failed(self, candidate: CandidateFile, error: str) -> None:
        try:
            if self.source.is_remote:
                await self.source.archive(candidate, TerminalState.FAILED)
            else:
                await self.router.route(candidate.source_path, TerminalState.FAILED, error=error)
        except Exception as e:
            logger.error("scan_failed_route_error", file_name=candidate.display_name, error=str(e))

    @staticmethod
    def _discard_download(path: Path) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("download_cleanup_failed", path=str(path), error=str(e))

    async def _record(self, result: ScanResult) -> None:
        if self.run_stats is None:
            return
        try:
            await self.run_stats.record(result)
        except OSError as e:
            logger.error("run_stats_write_failed", error=str(e))
