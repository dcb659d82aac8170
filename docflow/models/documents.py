"""
Document Data Models

Pydantic models for files, templates, extraction results and the
document records produced by the ingestion pipeline.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Timezone-aware current time used for every stored timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class DocumentType(str, Enum):
    """Business document types."""
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"
    STATEMENT = "statement"


class FileKind(str, Enum):
    """File kinds a template can target."""
    PDF = "pdf"
    SPREADSHEET = "spreadsheet"

    @classmethod
    def from_path(cls, path: str) -> Optional["FileKind"]:
        lowered = str(path).lower()
        if lowered.endswith(".pdf"):
            return cls.PDF
        if lowered.endswith((".xlsx", ".xls", ".xlsm")):
            return cls.SPREADSHEET
        return None


class SourceKind(str, Enum):
    """Where an ingested file came from."""
    LOCAL = "local"
    FTP = "ftp"
    SFTP = "sftp"
    MANUAL_UPLOAD = "manual-upload"


class DocumentStatus(str, Enum):
    """Terminal and in-flight states of a document record."""
    PROCESSING = "processing"
    PARSED = "parsed"
    UNALLOCATED = "unallocated"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class CandidateFile(BaseModel):
    """A file seen during one scan. Never persisted."""
    source_path: str
    display_name: str
    size_bytes: int = Field(default=0, ge=0)
    content_digest: Optional[str] = None
    mtime: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.mtime).total_seconds()


# =============================================================================
# Templates
# =============================================================================

class FieldRegion(BaseModel):
    """
    Page region in normalized, top-left-origin coordinates.

    All four edges are fractions of the page size: ``left``/``right`` of the
    width, ``top``/``bottom`` of the height measured downward from the top.
    """
    left: float = Field(..., ge=0.0, le=1.0)
    top: float = Field(..., ge=0.0, le=1.0)
    right: float = Field(..., ge=0.0, le=1.0)
    bottom: float = Field(..., ge=0.0, le=1.0)
    page: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def check_edges(self) -> "FieldRegion":
        if self.left > self.right or self.top > self.bottom:
            raise ValueError("region edges are inverted")
        return self

    @classmethod
    def from_absolute(
        cls,
        x: float,
        y: float,
        width: float,
        height: float,
        page_width: float,
        page_height: float,
        page: int = 1,
    ) -> "FieldRegion":
        """Build a region from a top-left-origin box drawn in page units."""
        if page_width <= 0 or page_height <= 0:
            raise ValueError("page size must be positive")

        def clamp(value: float) -> float:
            return max(0.0, min(1.0, value))

        return cls(
            left=clamp(x / page_width),
            top=clamp(y / page_height),
            right=clamp((x + width) / page_width),
            bottom=clamp((y + height) / page_height),
            page=page,
        )


class CellRef(BaseModel):
    """Spreadsheet cell (or rectangular range) reference."""
    column: str
    row: int = Field(..., ge=1)
    end_column: Optional[str] = None
    end_row: Optional[int] = Field(default=None, ge=1)
    sheet: Optional[int] = Field(default=None, ge=0)

    @field_validator("column", "end_column")
    @classmethod
    def normalize_column(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().upper()
        if not v.isalpha():
            raise ValueError(f"invalid column letters: {v!r}")
        return v

    @property
    def is_range(self) -> bool:
        return bool(self.end_column and self.end_row)


class FieldTransform(BaseModel):
    """Post-extraction cleanup declared per template field."""
    remove: List[str] = Field(default_factory=list)
    trim: bool = True
    uppercase: bool = False
    lowercase: bool = False
    data_type: Optional[str] = None  # currency, number or date

    @field_validator("data_type")
    @classmethod
    def validate_data_type(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("currency", "number", "date", "text"):
            raise ValueError(f"unsupported data type: {v}")
        return v


class FieldDefinition(BaseModel):
    """Where a template reads one field from, and how to clean it."""
    region: Optional[FieldRegion] = None
    cell: Optional[CellRef] = None
    transform: Optional[FieldTransform] = None


class Template(BaseModel):
    """Coordinate template for one (scope, document type, file kind)."""
    id: str = Field(default_factory=new_id)
    name: str
    code: Optional[str] = None
    owner_scope: str = "global"
    document_type: DocumentType
    file_kind: FileKind
    is_default: bool = False
    enabled: bool = True
    priority: int = 0
    fields: Dict[str, FieldDefinition] = Field(default_factory=dict)
    mandatory_fields: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def fill_code(self) -> "Template":
        if not self.code:
            self.code = "_".join(self.name.lower().split())
        return self

    @property
    def has_coordinates(self) -> bool:
        return any(f.region or f.cell for f in self.fields.values())


# =============================================================================
# Extraction
# =============================================================================

class ExtractionResult(BaseModel):
    """Outcome of one extraction attempt. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    fields: Dict[str, Any] = Field(default_factory=dict)
    full_text: str = ""
    confidence_score: int = Field(default=0, ge=0, le=100)
    processing_method: str = "local_basic"
    warnings: List[str] = Field(default_factory=list)
    template_id: Optional[str] = None
    document_type: Optional[DocumentType] = None


# =============================================================================
# Persistence records (external collaborators)
# =============================================================================

class Company(BaseModel):
    """Business entity a document is matched to."""
    id: str = Field(default_factory=new_id)
    name: str
    reference_no: Optional[str] = None
    code: Optional[str] = None
    email: Optional[str] = None


class BusinessDocument(BaseModel):
    """Invoice, credit note or statement linked to a matched company."""
    kind: DocumentType
    number: str
    issue_date: date
    company_id: str
    amount: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    goods_amount: Optional[Decimal] = None
    customer_po: Optional[str] = None
    number_generated: bool = False


class DocumentRecord(BaseModel):
    """Stored outcome of ingesting one file."""
    id: str = Field(default_factory=new_id)
    content_digest: str
    file_name: str
    status: DocumentStatus = DocumentStatus.PROCESSING
    source_kind: SourceKind = SourceKind.LOCAL
    import_batch_id: Optional[str] = None
    document_type: Optional[DocumentType] = None
    matched_entity_id: Optional[str] = None
    duplicate_of_id: Optional[str] = None
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None
    extraction_result: Optional[ExtractionResult] = None
    business_document: Optional[BusinessDocument] = None
    physical_location: Optional[str] = None
    issue_date: Optional[date] = None
    period_end: Optional[date] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class EmailStatus(str, Enum):
    """Delivery log states."""
    QUEUED = "QUEUED"
    SENDING = "SENDING"
    SENT = "SENT"
    DEFERRED = "DEFERRED"
    FAILED_PERMANENT = "FAILED_PERMANENT"


class EmailLog(BaseModel):
    """Delivery record for one outbound notification."""
    id: str = Field(default_factory=new_id)
    recipients: List[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    attachments: List[str] = Field(default_factory=list)
    provider: str = "smtp"
    status: EmailStatus = EmailStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 10
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    error_type: Optional[str] = None
    message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    related_document_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
