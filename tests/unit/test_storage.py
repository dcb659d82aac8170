"""
Unit tests for the SQLite repositories.
"""

import pytest

from docflow.models import (
    Company,
    DocumentRecord,
    DocumentStatus,
    DocumentType,
    EmailLog,
    EmailStatus,
    FileKind,
    Template,
)
from docflow.utils.errors import DuplicateDocumentError
from docflow.utils.storage import normalize_reference


class TestDocumentRepository:
    """Tests for document records and the live-digest constraint."""

    async def test_create_and_get(self, storage):
        record = DocumentRecord(content_digest="d1", file_name="a.pdf")
        await storage.documents.create(record)

        loaded = await storage.documents.get(record.id)

        assert loaded is not None
        assert loaded.file_name == "a.pdf"
        assert loaded.status == DocumentStatus.PROCESSING

    async def test_live_digest_is_unique(self, storage):
        """Test a second live record with the same digest is refused."""
        await storage.documents.create(DocumentRecord(content_digest="d1", file_name="a.pdf"))

        with pytest.raises(DuplicateDocumentError) as exc:
            await storage.documents.create(DocumentRecord(content_digest="d1", file_name="b.pdf"))

        assert exc.value.content_digest == "d1"

    async def test_duplicate_records_share_digest(self, storage):
        """Test duplicate and failed records do not hold the digest."""
        original = DocumentRecord(content_digest="d1", file_name="a.pdf", status=DocumentStatus.PARSED)
        await storage.documents.create(original)
        await storage.documents.create(DocumentRecord(
            content_digest="d1",
            file_name="b.pdf",
            status=DocumentStatus.DUPLICATE,
            duplicate_of_id=original.id,
        ))
        await storage.documents.create(DocumentRecord(
            content_digest="d1", file_name="c.pdf", status=DocumentStatus.FAILED,
        ))

        records = await storage.documents.find_by_digest("d1")

        assert [r.file_name for r in records] == ["a.pdf", "b.pdf", "c.pdf"]

    async def test_soft_delete_frees_digest(self, storage):
        """Test a soft-deleted record no longer holds the constraint."""
        record = DocumentRecord(content_digest="d1", file_name="a.pdf")
        await storage.documents.create(record)

        assert await storage.documents.soft_delete(record.id) is True
        assert await storage.documents.soft_delete(record.id) is False

        await storage.documents.create(DocumentRecord(content_digest="d1", file_name="a.pdf"))
        live = await storage.documents.list_documents()
        everything = await storage.documents.list_documents(include_deleted=True)

        assert len(live) == 1
        assert len(everything) == 2

    async def test_list_by_status(self, storage):
        await storage.documents.create(DocumentRecord(content_digest="d1", file_name="a.pdf"))
        await storage.documents.create(DocumentRecord(
            content_digest="d2", file_name="b.pdf", status=DocumentStatus.UNALLOCATED,
        ))

        unallocated = await storage.documents.list_documents(status=DocumentStatus.UNALLOCATED)

        assert [r.file_name for r in unallocated] == ["b.pdf"]


class TestTemplateRepository:
    """Tests for template lookup order and default handling."""

    async def test_set_default_clears_siblings(self, storage):
        """Test only one default exists per scope, type and file kind."""
        first = Template(name="First", document_type=DocumentType.INVOICE,
                         file_kind=FileKind.PDF, is_default=True)
        second = Template(name="Second", document_type=DocumentType.INVOICE, file_kind=FileKind.PDF)
        other = Template(name="Statement", document_type=DocumentType.STATEMENT,
                         file_kind=FileKind.PDF, is_default=True)
        for template in (first, second, other):
            await storage.templates.create(template)

        await storage.templates.set_default(second.id)

        defaults = await storage.templates.find(FileKind.PDF, DocumentType.INVOICE, is_default=True)
        assert [t.id for t in defaults] == [second.id]
        assert (await storage.templates.get(other.id)).is_default is True

    async def test_find_orders_by_priority(self, storage):
        low = Template(name="Low", document_type=DocumentType.INVOICE, file_kind=FileKind.PDF, priority=1)
        high = Template(name="High", document_type=DocumentType.INVOICE, file_kind=FileKind.PDF, priority=5)
        disabled = Template(name="Off", document_type=DocumentType.INVOICE, file_kind=FileKind.PDF,
                            priority=9, enabled=False)
        for template in (low, high, disabled):
            await storage.templates.create(template)

        found = await storage.templates.find(FileKind.PDF)

        assert [t.name for t in found] == ["High", "Low"]


class TestCompanyRepository:
    """Tests for account number lookups."""

    def test_normalize_reference(self):
        assert normalize_reference("AC-0012345") == "12345"
        assert normalize_reference(" 12345 ") == "12345"
        assert normalize_reference("abc") == "ABC"
        assert normalize_reference("  ") is None

    async def test_find_by_reference(self, storage):
        company = Company(name="Acme Ltd", reference_no="12345")
        await storage.companies.create(company)

        assert (await storage.companies.find_by_reference("0012345")).id == company.id
        assert (await storage.companies.find_by_reference("AC-12345")).id == company.id
        assert await storage.companies.find_by_reference("99999") is None

    async def test_find_by_code(self, storage):
        company = Company(name="Widgets", code="wid")
        await storage.companies.create(company)

        assert (await storage.companies.find_by_reference("WID")).id == company.id


class TestEmailLogRepository:
    """Tests for delivery logs."""

    async def test_paging(self, storage):
        for index in range(3):
            await storage.email_logs.create(EmailLog(recipients=[f"u{index}@example.com"]))
        sent = EmailLog(recipients=["done@example.com"], status=EmailStatus.SENT)
        await storage.email_logs.create(sent)

        page, total = await storage.email_logs.list_logs(page=1, page_size=2)
        only_sent, sent_total = await storage.email_logs.list_logs(status=EmailStatus.SENT)

        assert total == 4
        assert len(page) == 2
        assert sent_total == 1
        assert only_sent[0].id == sent.id
