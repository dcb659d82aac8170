"""
Deduplication index.

Answers "was this content already ingested?" from the document store,
honouring the retention window that lets a deleted document be uploaded
again after N days.
"""

from datetime import datetime
from typing import Iterable, Optional

from docflow.models import DocumentRecord, DocumentStatus, utc_now
from docflow.ingestion.retention import deleted_beyond_window
from docflow.queue.jobs import Job, document_id_for_job
from docflow.utils.logger import get_logger
from docflow.utils.storage import DocumentRepository

logger = get_logger(__name__)

# A duplicate record points at its original, which decides for it.
# Every other non-deleted record blocks, a failed one included.
NON_BLOCKING_STATUSES = {DocumentStatus.DUPLICATE}


class DeduplicationIndex:
    """Digest lookups against the document repository."""

    def __init__(self, documents: DocumentRepository, retention_days: Optional[int] = None):
        self.documents = documents
        self.retention_days = retention_days

    def blocks(self, record: DocumentRecord, now: datetime) -> bool:
        """Whether an existing record makes new content with its digest a duplicate."""
        if record.status in NON_BLOCKING_STATUSES:
            return False
        if record.deleted_at is None:
            return True
        return not deleted_beyond_window(record, self.retention_days, now)

    async def find_original(
        self,
        content_digest: str,
        now: Optional[datetime] = None,
    ) -> Optional[DocumentRecord]:
        """Oldest record that makes ``content_digest`` a duplicate, if any."""
        now = now or utc_now()
        for record in await self.documents.find_by_digest(content_digest):
            if self.blocks(record, now):
                logger.debug(
                    "duplicate_found",
                    content_digest=content_digest[:12],
                    original_id=record.id,
                    deleted=record.is_deleted,
                )
                return record
        return None

    async def is_duplicate(self, content_digest: str, now: Optional[datetime] = None) -> bool:
        return await self.find_original(content_digest, now) is not None


def is_orphaned(record: DocumentRecord, pending_jobs: Iterable[Job]) -> bool:
    """
    A ``processing`` record whose owning invoice-import job is gone.

    That happens when the process died mid-import and the job did not
    survive. The record is unfinished work for its own content, not the
    original of a duplicate, and should be resumed.
    """
    if record.status != DocumentStatus.PROCESSING or record.is_deleted:
        return False
    return not any(document_id_for_job(job.id) == record.id for job in pending_jobs)
