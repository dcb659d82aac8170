"""Utility modules for logging, errors and storage."""

from docflow.utils.logger import configure_logging, get_logger, job_log_context
from docflow.utils.errors import (
    ConfigurationError,
    DeliveryError,
    DocflowError,
    DocumentError,
    DuplicateDocumentError,
    ErrorSeverity,
    ExtractionError,
    SourceError,
    StorageError,
    TemplateMismatchError,
    UnrecoverableJobError,
)
from docflow.utils.storage import (
    CompanyRepository,
    DocumentRepository,
    EmailLogRepository,
    JobRepository,
    Storage,
    TemplateRepository,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "job_log_context",
    "ConfigurationError",
    "DeliveryError",
    "DocflowError",
    "DocumentError",
    "DuplicateDocumentError",
    "ErrorSeverity",
    "ExtractionError",
    "SourceError",
    "StorageError",
    "TemplateMismatchError",
    "UnrecoverableJobError",
    "CompanyRepository",
    "DocumentRepository",
    "EmailLogRepository",
    "JobRepository",
    "Storage",
    "TemplateRepository",
]
