"""
Error Types

Exception hierarchy shared by the ingestion pipeline, the job
orchestrator and the notification step.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels for recovery decisions."""
    LOW = "low"           # Can retry immediately
    MEDIUM = "medium"     # Should backoff and retry
    HIGH = "high"         # Needs operator attention for this item
    CRITICAL = "critical" # Requires manual intervention


class DocflowError(Exception):
    """Base exception for pipeline errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recoverable: bool = True,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)


class ConfigurationError(DocflowError):
    """Required configuration is missing or invalid."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorSeverity.CRITICAL, recoverable=False, context=context)


class DocumentError(DocflowError):
    """A document cannot be read or is of an unsupported kind."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorSeverity.HIGH, recoverable=False, context=context)


class ExtractionError(DocflowError):
    """Field extraction failed for a reason other than missing data."""
    pass


class SourceError(DocflowError):
    """Listing, downloading or moving a source file failed."""
    pass


class StorageError(DocflowError):
    """The persistence layer rejected an operation."""
    pass


class DuplicateDocumentError(StorageError):
    """A live document with the same content digest already exists."""

    def __init__(self, content_digest: str):
        super().__init__(
            f"Document with digest {content_digest} already exists",
            ErrorSeverity.LOW,
            recoverable=False,
            context={"content_digest": content_digest},
        )
        self.content_digest = content_digest


class UnrecoverableJobError(DocflowError):
    """Raised by a job body to stop retries and dead-letter the job."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorSeverity.HIGH, recoverable=False, context=context)


class DeliveryError(DocflowError):
    """
    Failure reported by an email delivery provider.

    ``response_code`` carries an SMTP/HTTP status when the provider gave
    one, ``code`` a transport error name such as ``ETIMEDOUT``.
    """

    def __init__(
        self,
        message: str,
        response_code: Optional[int] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, ErrorSeverity.MEDIUM, recoverable=True, context=context)
        self.response_code = response_code
        self.code = code


class TemplateMismatchError(ExtractionError):
    """A template's declared document type differs from the one requested."""

    def __init__(self, template_id: str, expected: str, actual: str):
        super().__init__(
            f"Template {template_id} is for {actual}, not {expected}",
            ErrorSeverity.LOW,
            recoverable=False,
            context={"template_id": template_id, "expected": expected, "actual": actual},
        )
        self.template_id = template_id
        self.expected = expected
        self.actual = actual
