"""Job processors for each queue, plus the context they share."""

from docflow.jobs.bulk_parsing import process_bulk_parsing
from docflow.jobs.context import PipelineContext
from docflow.jobs.email_job import process_email
from docflow.jobs.file_import import process_file_import
from docflow.jobs.invoice_import import process_invoice_import
from docflow.jobs.scheduled import Scheduler, process_scheduled_task

__all__ = [
    "PipelineContext",
    "process_bulk_parsing",
    "process_email",
    "process_file_import",
    "process_invoice_import",
    "process_scheduled_task",
    "Scheduler",
]
