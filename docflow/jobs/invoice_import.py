"""
invoice-import job.

The ingestion pipeline for one local file:

1. stop if the import batch was cancelled
2. hash (or trust the digest the scanner attached)
3. re-check deduplication; a duplicate is archived and recorded
4. create the ``processing`` record (the storage uniqueness constraint
   settles races between concurrent jobs for the same content)
5. extract, match, then route to processed as ``parsed`` or
   ``unallocated``

The document record id is derived from the job id, so a retried job
picks its own ``processing`` record back up instead of treating it as
the original of a duplicate. A ``processing`` record that no pending job
owns was left by a process that died mid-import; it is adopted and
finished rather than used as a duplicate original.

Failures that cannot improve on retry (unreadable file, bad template)
and failures on the last attempt route the file to failed with a sidecar,
mark the record ``failed`` and stop retries. Anything else propagates
for the queue to retry.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from docflow.extraction.fields import DATE_KEYS, first_value
from docflow.extraction.transforms import parse_date
from docflow.ingestion.dedup import is_orphaned
from docflow.ingestion.hashing import hash_file
from docflow.ingestion.router import TerminalState
from docflow.jobs.context import PipelineContext
from docflow.matching import MatchResult
from docflow.models import (
    DocumentRecord,
    DocumentStatus,
    InvoiceImportPayload,
    SourceKind,
    utc_now,
)
from docflow.queue.jobs import INVOICE_IMPORT, PENDING_STATES, Job, document_id_for_job
from docflow.utils.errors import (
    ConfigurationError,
    DocflowError,
    DocumentError,
    DuplicateDocumentError,
    ExtractionError,
    SourceError,
    UnrecoverableJobError,
)
from docflow.utils.logger import get_logger

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Import was cancelled by user"
PROCESSING_ERROR = "processing_error"


def document_id_for(job: Job) -> str:
    return document_id_for_job(job.id)


def _source_kind(tag: str) -> SourceKind:
    try:
        return SourceKind(tag)
    except ValueError:
        return SourceKind.LOCAL


def _is_permanent(error: Exception) -> bool:
    if isinstance(error, (DocumentError, ExtractionError, ConfigurationError, UnrecoverableJobError)):
        return True
    return isinstance(error, DocflowError) and not error.recoverable


def _orphaned(ctx: PipelineContext, record: DocumentRecord) -> bool:
    queue = ctx.queues.get(INVOICE_IMPORT)
    pending = queue.get_jobs(PENDING_STATES) if queue is not None else []
    return is_orphaned(record, pending)


async def _batch_result(ctx: PipelineContext, payload: InvoiceImportPayload, result: Dict[str, Any]) -> None:
    if payload.import_batch_id:
        await ctx.batches.add_result(payload.import_batch_id, {"file_name": payload.file_name, **result})


async def process_invoice_import(
    ctx: PipelineContext,
    job: Job,
    payload: InvoiceImportPayload,
) -> Dict[str, Any]:
    if await ctx.batches.is_cancelled(payload.import_batch_id):
        logger.info("invoice_import_cancelled", file_name=payload.file_name, batch_id=payload.import_batch_id)
        await _batch_result(ctx, payload, {"success": False, "error": CANCELLED_MESSAGE})
        raise UnrecoverableJobError(CANCELLED_MESSAGE, context={"file_name": payload.file_name})

    path = Path(payload.file_path)
    if not path.exists():
        message = f"File not found: {payload.file_path}"
        await _batch_result(ctx, payload, {"success": False, "error": message})
        raise UnrecoverableJobError(message, context={"file_name": payload.file_name})

    digest = payload.content_digest or await hash_file(path)
    documents = ctx.storage.documents
    record_id = document_id_for(job)

    record = await documents.get(record_id)
    if record is None:
        original = await _find_original(ctx, payload, digest, record_id)
        if original is not None and _orphaned(ctx, original):
            logger.info("invoice_import_resuming", file_name=payload.file_name, document_id=original.id)
            record = original
        elif original is not None:
            return await _handle_duplicate(ctx, payload, path, digest, original)

    if record is None:
        record = DocumentRecord(
            id=record_id,
            content_digest=digest,
            file_name=payload.file_name,
            status=DocumentStatus.PROCESSING,
            source_kind=_source_kind(payload.source_tag),
            import_batch_id=payload.import_batch_id,
        )
        try:
            await documents.create(record)
        except DuplicateDocumentError:
            original = await _find_original(ctx, payload, digest, record_id)
            if original is None:
                raise
            return await _handle_duplicate(ctx, payload, path, digest, original)

    try:
        return await _process(ctx, payload, path, record)
    except Exception as e:
        final = _is_permanent(e) or job.attempts_made + 1 >= job.opts.attempts
        logger.error(
            "invoice_import_failed",
            file_name=payload.file_name,
            document_id=record.id,
            error=str(e),
            final=final,
            exc_info=True,
        )
        if not final:
            raise
        await _fail(ctx, payload, path, record, e)
        if isinstance(e, UnrecoverableJobError):
            raise
        raise UnrecoverableJobError(str(e), context={"file_name": payload.file_name}) from e


async def _find_original(
    ctx: PipelineContext,
    payload: InvoiceImportPayload,
    digest: str,
    own_id: str,
) -> Optional[DocumentRecord]:
    if payload.is_duplicate and payload.duplicate_of_id:
        flagged = await ctx.storage.documents.get(payload.duplicate_of_id)
        if flagged is not None and flagged.id != own_id and ctx.dedup.blocks(flagged, utc_now()):
            return flagged
    original = await ctx.dedup.find_original(digest)
    if original is not None and original.id == own_id:
        return None
    return original


async def _handle_duplicate(
    ctx: PipelineContext,
    payload: InvoiceImportPayload,
    path: Path,
    digest: str,
    original: DocumentRecord,
) -> Dict[str, Any]:
    location = await ctx.router.route(str(path), TerminalState.DUPLICATE)
    record = DocumentRecord(
        content_digest=digest,
        file_name=payload.file_name,
        status=DocumentStatus.DUPLICATE,
        source_kind=_source_kind(payload.source_tag),
        import_batch_id=payload.import_batch_id,
        duplicate_of_id=original.id,
        failure_reason="duplicate",
        physical_location=location,
    )
    await ctx.storage.documents.create(record)
    logger.info("invoice_import_duplicate", file_name=payload.file_name, original_id=original.id)
    await _batch_result(ctx, payload, {
        "success": True,
        "status": DocumentStatus.DUPLICATE.value,
        "duplicate_of_id": original.id,
    })
    return {
        "status": DocumentStatus.DUPLICATE.value,
        "document_id": record.id,
        "duplicate_of_id": original.id,
        "location": location,
    }


async def _process(
    ctx: PipelineContext,
    payload: InvoiceImportPayload,
    path: Path,
    record: DocumentRecord,
) -> Dict[str, Any]:
    extraction = await ctx.extractor.extract(path, content_digest=record.content_digest)
    match: MatchResult = await ctx.matcher.match(extraction.fields)

    record.extraction_result = extraction
    record.document_type = extraction.document_type
    record.issue_date = parse_date(first_value(extraction.fields, DATE_KEYS))
    record.error_message = None

    if match.matched:
        business = ctx.matcher.build_business_document(
            extraction.document_type,
            extraction.fields,
            match.company,
            record.content_digest,
        )
        record.status = DocumentStatus.PARSED
        record.matched_entity_id = match.company.id
        record.business_document = business
        record.issue_date = business.issue_date
        record.failure_reason = None
    else:
        record.status = DocumentStatus.UNALLOCATED
        record.matched_entity_id = None
        record.business_document = None
        record.failure_reason = match.failure_reason

    location = await ctx.router.route(str(path), TerminalState.PROCESSED, record=record)

    logger.info(
        "invoice_import_completed",
        file_name=payload.file_name,
        document_id=record.id,
        status=record.status.value,
        document_type=extraction.document_type.value,
        confidence=extraction.confidence_score,
        company_id=record.matched_entity_id,
    )

    if match.matched:
        await _notify_company(ctx, record, match, location)

    result = {
        "status": record.status.value,
        "document_id": record.id,
        "document_type": extraction.document_type.value,
        "confidence": extraction.confidence_score,
        "company_id": record.matched_entity_id,
        "failure_reason": record.failure_reason,
        "warnings": list(extraction.warnings),
        "location": location,
    }
    await _batch_result(ctx, payload, {"success": True, **result})
    return result


async def _notify_company(
    ctx: PipelineContext,
    record: DocumentRecord,
    match: MatchResult,
    location: str,
) -> None:
    if not ctx.settings.notify_on_import or ctx.email_queue is None or not match.company.email:
        return
    business = record.business_document
    label = business.kind.value.replace("_", " ").title()
    try:
        await ctx.email_queue.queue_email(
            [match.company.email],
            f"New {label} {business.number}",
            f"A new {label.lower()} ({business.number}) dated {business.issue_date.isoformat()} "
            f"is attached.",
            attachments=[location],
            related_document_id=record.id,
        )
    except Exception as e:
        logger.error("document_notification_failed", document_id=record.id, error=str(e))


async def _fail(
    ctx: PipelineContext,
    payload: InvoiceImportPayload,
    path: Path,
    record: DocumentRecord,
    error: Exception,
) -> None:
    message = str(error) or type(error).__name__
    record.status = DocumentStatus.FAILED
    record.failure_reason = PROCESSING_ERROR
    record.error_message = message[:1000]
    if path.exists():
        try:
            await ctx.router.route(str(path), TerminalState.FAILED, error=message, record=record)
        except SourceError as e:
            logger.error("failed_route_error", file_name=payload.file_name, error=str(e))
            await ctx.storage.documents.update(record)
    else:
        await ctx.storage.documents.update(record)
    await _batch_result(ctx, payload, {"success": False, "error": message})
