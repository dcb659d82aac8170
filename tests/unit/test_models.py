"""
Unit tests for document and payload models.
"""

import pytest
from pydantic import ValidationError

from docflow.models import (
    CellRef,
    DocumentRecord,
    DocumentStatus,
    DocumentType,
    ExtractionResult,
    FieldRegion,
    FileImportPayload,
    FileKind,
    InvoiceImportPayload,
    ScheduledTaskPayload,
    Template,
    parse_payload,
)


class TestFieldRegion:
    """Tests for normalized template regions."""

    def test_from_absolute(self):
        """Test a drawn box is converted to page fractions."""
        region = FieldRegion.from_absolute(60, 80, 120, 40, page_width=600, page_height=800)

        assert region.left == pytest.approx(0.1)
        assert region.top == pytest.approx(0.1)
        assert region.right == pytest.approx(0.3)
        assert region.bottom == pytest.approx(0.15)
        assert region.page == 1

    def test_from_absolute_clamps(self):
        """Test boxes drawn past the page edge are clamped."""
        region = FieldRegion.from_absolute(500, 700, 200, 200, page_width=600, page_height=800)

        assert region.right == 1.0
        assert region.bottom == 1.0

    def test_inverted_edges_rejected(self):
        with pytest.raises(ValidationError):
            FieldRegion(left=0.5, top=0.1, right=0.2, bottom=0.3)

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            FieldRegion(left=0.0, top=0.0, right=1.5, bottom=0.5)


class TestCellRef:
    """Tests for spreadsheet cell references."""

    def test_column_normalized(self):
        ref = CellRef(column=" b ", row=3)

        assert ref.column == "B"
        assert ref.is_range is False

    def test_range(self):
        ref = CellRef(column="A", row=1, end_column="c", end_row=4)

        assert ref.is_range is True
        assert ref.end_column == "C"

    def test_invalid_column(self):
        with pytest.raises(ValidationError):
            CellRef(column="A1", row=1)


class TestTemplate:
    """Tests for Template model."""

    def test_code_from_name(self):
        """Test a missing code is derived from the name."""
        template = Template(name="Acme Invoice", document_type=DocumentType.INVOICE, file_kind=FileKind.PDF)

        assert template.code == "acme_invoice"
        assert template.has_coordinates is False

    def test_file_kind_from_path(self):
        assert FileKind.from_path("scan.PDF") == FileKind.PDF
        assert FileKind.from_path("book.xlsx") == FileKind.SPREADSHEET
        assert FileKind.from_path("legacy.xls") == FileKind.SPREADSHEET
        assert FileKind.from_path("notes.txt") is None


class TestRecords:
    """Tests for extraction results and document records."""

    def test_extraction_result_is_frozen(self):
        result = ExtractionResult(fields={"invoice_number": "INV-1"}, confidence_score=80)

        with pytest.raises(ValidationError):
            result.confidence_score = 10

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            ExtractionResult(confidence_score=101)

    def test_document_defaults(self):
        record = DocumentRecord(content_digest="abc", file_name="a.pdf")

        assert record.status == DocumentStatus.PROCESSING
        assert record.is_deleted is False
        assert record.created_at.tzinfo is not None


class TestPayloads:
    """Tests for per-queue job payload schemas."""

    def test_camel_case_job_data(self):
        """Test job data uses camelCase keys."""
        payload = InvoiceImportPayload(file_path="/tmp/a.pdf", file_name="a.pdf", content_digest="abc")

        data = payload.to_job_data()

        assert data["filePath"] == "/tmp/a.pdf"
        assert data["contentDigest"] == "abc"
        assert data["isDuplicate"] is False

    def test_parse_payload_by_queue(self):
        """Test raw data is validated against its queue's schema."""
        payload = parse_payload("file-import", {
            "fileName": "a.pdf",
            "remoteOrLocalPath": "/in/a.pdf",
            "importBatchId": "batch-1",
        })

        assert isinstance(payload, FileImportPayload)
        assert payload.import_batch_id == "batch-1"

    def test_parse_payload_missing_field(self):
        with pytest.raises(ValidationError):
            parse_payload("invoice-import", {"fileName": "a.pdf"})

    def test_parse_payload_wrong_queue(self):
        """Test a payload tagged for another queue is refused."""
        data = ScheduledTaskPayload(task_name="file-cleanup").to_job_data()

        with pytest.raises(ValueError):
            parse_payload("email", data)
