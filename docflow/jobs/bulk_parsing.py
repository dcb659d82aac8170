"""
bulk-parsing-test job.

Runs classification, template resolution, extraction and scoring on one
file without storing a document or moving the file. Used to trial
templates against a folder of samples. A file that cannot be parsed is
reported in the result rather than failing the job.
"""

import time
from pathlib import Path
from typing import Any, Dict

from docflow.jobs.context import PipelineContext
from docflow.models import BulkParsingPayload, utc_now
from docflow.queue.jobs import Job
from docflow.utils.errors import DocflowError, UnrecoverableJobError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


async def process_bulk_parsing(ctx: PipelineContext, job: Job, payload: BulkParsingPayload) -> Dict[str, Any]:
    started = time.monotonic()
    template = None
    if payload.template_id:
        template = await ctx.extractor.resolver.by_id(payload.template_id)
        if template is None:
            raise UnrecoverableJobError(f"Template {payload.template_id} not found")

    job.progress = 10
    try:
        result = await ctx.extractor.extract(Path(payload.file_path), template=template)
    except (DocflowError, OSError) as e:
        logger.warning("bulk_parse_failed", file_name=payload.file_name, error=str(e))
        return {
            "success": False,
            "file_name": payload.file_name,
            "file_path": payload.file_path,
            "error": str(e) or type(e).__name__,
            "confidence": 0,
            "extracted_fields": {},
            "processing_time_ms": int((time.monotonic() - started) * 1000),
            "timestamp": utc_now().isoformat(),
        }

    job.progress = 100
    return {
        "success": True,
        "file_name": payload.file_name,
        "file_path": payload.file_path,
        "document_type": result.document_type.value,
        "template_id": result.template_id,
        "processing_method": result.processing_method,
        "confidence": result.confidence_score,
        "extracted_fields": {k: str(v) if v is not None else None for k, v in result.fields.items()},
        "warnings": list(result.warnings),
        "text_length": len(result.full_text),
        "word_count": len(result.full_text.split()),
        "processing_time_ms": int((time.monotonic() - started) * 1000),
        "timestamp": utc_now().isoformat(),
    }
