"""Data models for documents, templates and job payloads."""

from docflow.models.documents import (
    BusinessDocument,
    CandidateFile,
    CellRef,
    Company,
    DocumentRecord,
    DocumentStatus,
    DocumentType,
    EmailLog,
    EmailStatus,
    ExtractionResult,
    FieldDefinition,
    FieldRegion,
    FieldTransform,
    FileKind,
    SourceKind,
    Template,
    new_id,
    utc_now,
)
from docflow.models.payloads import (
    BulkParsingPayload,
    EmailPayload,
    FileImportPayload,
    InvoiceImportPayload,
    JobPayload,
    ScheduledTaskPayload,
    parse_payload,
)

__all__ = [
    "BusinessDocument",
    "CandidateFile",
    "CellRef",
    "Company",
    "DocumentRecord",
    "DocumentStatus",
    "DocumentType",
    "EmailLog",
    "EmailStatus",
    "ExtractionResult",
    "FieldDefinition",
    "FieldRegion",
    "FieldTransform",
    "FileKind",
    "SourceKind",
    "Template",
    "new_id",
    "utc_now",
    "BulkParsingPayload",
    "EmailPayload",
    "FileImportPayload",
    "InvoiceImportPayload",
    "JobPayload",
    "ScheduledTaskPayload",
    "parse_payload",
]
