"""
file-import job.

Downloads one file from the source named in the job, hashes it and hands
it to invoice-import. Duplicate content is archived and recorded here so
it never reaches extraction. Batch cancellation is checked before and
after every network operation.
"""

from pathlib import Path
from typing import Any, Dict

from docflow.ingestion.hashing import hash_file
from docflow.ingestion.router import TerminalState
from docflow.ingestion.sources import DocumentSource, source_from_config
from docflow.jobs.context import PipelineContext
from docflow.models import (
    CandidateFile,
    DocumentRecord,
    DocumentStatus,
    FileImportPayload,
    InvoiceImportPayload,
    utc_now,
)
from docflow.queue.jobs import INVOICE_IMPORT, Job
from docflow.utils.errors import UnrecoverableJobError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Import was cancelled by user"


async def _check_cancelled(ctx: PipelineContext, payload: FileImportPayload, *cleanup: Path) -> None:
    if not await ctx.batches.is_cancelled(payload.import_batch_id):
        return
    for path in cleanup:
        Path(path).unlink(missing_ok=True)
    logger.info("file_import_cancelled", file_name=payload.file_name, batch_id=payload.import_batch_id)
    raise UnrecoverableJobError(CANCELLED_MESSAGE, context={"file_name": payload.file_name})


def _source_for(ctx: PipelineContext, payload: FileImportPayload) -> DocumentSource:
    config = dict(payload.source_config)
    if payload.ftp_folder and not config.get("directory"):
        config["directory"] = payload.ftp_folder
    return source_from_config(config, ctx.settings)


async def process_file_import(ctx: PipelineContext, job: Job, payload: FileImportPayload) -> Dict[str, Any]:
    await _check_cancelled(ctx, payload)

    source = _source_for(ctx, payload)
    candidate = CandidateFile(
        source_path=payload.remote_or_local_path,
        display_name=payload.file_name,
        mtime=utc_now(),
    )
    try:
        local_path = await source.fetch(candidate)
        await _check_cancelled(ctx, payload, *([local_path] if source.is_remote else []))

        digest = await hash_file(local_path)
        candidate = candidate.model_copy(update={"content_digest": digest})

        original = await ctx.dedup.find_original(digest)
        if original is not None:
            if source.is_remote:
                location = await source.archive(candidate, TerminalState.DUPLICATE)
                Path(local_path).unlink(missing_ok=True)
            else:
                location = await ctx.router.route(str(local_path), TerminalState.DUPLICATE)
            record = DocumentRecord(
                content_digest=digest,
                file_name=payload.file_name,
                status=DocumentStatus.DUPLICATE,
                source_kind=source.kind,
                import_batch_id=payload.import_batch_id,
                duplicate_of_id=original.id,
                failure_reason="duplicate",
                physical_location=location,
            )
            await ctx.storage.documents.create(record)
            if payload.import_batch_id:
                await ctx.batches.add_result(payload.import_batch_id, {
                    "success": True,
                    "file_name": payload.file_name,
                    "status": DocumentStatus.DUPLICATE.value,
                    "duplicate_of_id": original.id,
                })
            logger.info("file_import_duplicate", file_name=payload.file_name, original_id=original.id)
            return {"status": "duplicate", "document_id": record.id, "duplicate_of_id": original.id}

        invoice_payload = InvoiceImportPayload(
            file_path=str(local_path),
            file_name=payload.file_name,
            import_batch_id=payload.import_batch_id,
            source_tag=source.kind.value,
            content_digest=digest,
        )
        queued = await ctx.queue(INVOICE_IMPORT).add(INVOICE_IMPORT, invoice_payload.to_job_data())

        if source.is_remote:
            await _check_cancelled(ctx, payload)
            await source.archive(candidate, TerminalState.PROCESSED)
    finally:
        await source.close()

    logger.info("file_import_queued", file_name=payload.file_name, invoice_job_id=queued.id)
    return {"status": "queued", "invoice_job_id": queued.id, "content_digest": digest}
