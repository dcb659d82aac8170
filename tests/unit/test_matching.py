"""
Unit tests for entity matching and business document construction.
"""

from datetime import date
from decimal import Decimal

import pytest

from docflow.matching import (
    NO_ACCOUNT_NUMBER,
    NO_COMPANY_MATCH,
    EntityMatcher,
    placeholder_number,
)
from docflow.models import Company, DocumentType


class TestPlaceholderNumber:
    """Tests for generated document numbers."""

    def test_format(self):
        number = placeholder_number(DocumentType.INVOICE, "abcdef1234", clock=lambda: 1700000000.0)

        assert number == "INV-1700000000000-abcdef12"

    def test_prefixes(self):
        clock = lambda: 1.0  # noqa: E731
        assert placeholder_number(DocumentType.STATEMENT, "x", clock=clock).startswith("STMT-")
        assert placeholder_number(DocumentType.CREDIT_NOTE, "x", clock=clock).startswith("CN-")

    def test_random_short_id(self):
        first = placeholder_number(DocumentType.INVOICE)
        second = placeholder_number(DocumentType.INVOICE)

        assert len(first.split("-")[-1]) == 8
        assert first != second


class TestEntityMatcher:
    """Tests for matching extracted fields to companies."""

    @pytest.fixture
    async def company(self, storage):
        company = Company(name="Acme Ltd", reference_no="AC-0012345", code="acme")
        await storage.companies.create(company)
        return company

    async def test_match_by_reference(self, storage, company):
        result = await EntityMatcher(storage.companies).match({"account_number": " 12345 "})

        assert result.matched
        assert result.company.id == company.id
        assert result.account_number == "12345"
        assert result.failure_reason is None

    async def test_match_by_code(self, storage, company):
        result = await EntityMatcher(storage.companies).match({"account_number": "ACME"})

        assert result.company.id == company.id

    async def test_no_account_number(self, storage, company):
        result = await EntityMatcher(storage.companies).match({"invoice_number": "INV-1"})

        assert not result.matched
        assert result.failure_reason == NO_ACCOUNT_NUMBER

    async def test_no_company(self, storage, company):
        result = await EntityMatcher(storage.companies).match({"account_number": "99999"})

        assert not result.matched
        assert result.account_number == "99999"
        assert result.failure_reason == NO_COMPANY_MATCH


class TestBusinessDocument:
    """Tests for building invoices, credit notes and statements."""

    @pytest.fixture
    def matcher(self, storage):
        return EntityMatcher(storage.companies, clock=lambda: 1700000000.0)

    @pytest.fixture
    def company(self):
        return Company(name="Acme Ltd", reference_no="12345")

    def test_invoice(self, matcher, company):
        fields = {
            "invoice_number": " INV-77 ",
            "invoice_date": "15/03/2024",
            "total_amount": "£1,200.00",
            "vat_amount": Decimal("200.00"),
            "goods_amount": "1000",
            "customer_po": "PO-1",
        }

        document = matcher.build_business_document(DocumentType.INVOICE, fields, company, "digest")

        assert document.kind == DocumentType.INVOICE
        assert document.number == "INV-77"
        assert document.issue_date == date(2024, 3, 15)
        assert document.company_id == company.id
        assert document.amount == Decimal("1200.00")
        assert document.vat_amount == Decimal("200.00")
        assert document.goods_amount == Decimal("1000")
        assert document.customer_po == "PO-1"
        assert document.number_generated is False

    def test_credit_note_prefers_credit_number(self, matcher, company):
        fields = {"credit_number": "CR-9", "invoice_number": "INV-1"}

        document = matcher.build_business_document(DocumentType.CREDIT_NOTE, fields, company)

        assert document.number == "CR-9"

    def test_missing_number_and_date(self, matcher, company):
        """Test a placeholder number is generated and the date defaults to today."""
        document = matcher.build_business_document(DocumentType.STATEMENT, {}, company, "0123456789abcdef")

        assert document.number == "STMT-1700000000000-01234567"
        assert document.number_generated is True
        assert document.issue_date is not None
        assert document.amount is None
