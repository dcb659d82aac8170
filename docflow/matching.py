"""
Entity matching.

Links an extracted document to a company by its account number and
builds the business document (invoice, credit note or statement) for a
match. An unmatched document is a data outcome, never an error.
"""

import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from docflow.extraction.fields import AMOUNT_KEYS, DATE_KEYS, first_value
from docflow.extraction.transforms import parse_amount, parse_date
from docflow.models import BusinessDocument, Company, DocumentType, utc_now
from docflow.utils.logger import get_logger
from docflow.utils.storage import CompanyRepository

logger = get_logger(__name__)

NUMBER_PREFIXES = {
    DocumentType.INVOICE: "INV",
    DocumentType.CREDIT_NOTE: "CN",
    DocumentType.STATEMENT: "STMT",
}

NO_COMPANY_MATCH = "no_company_match"
NO_ACCOUNT_NUMBER = "no_account_number"


def placeholder_number(
    document_type: DocumentType,
    short_id: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> str:
    """``{PREFIX}-{epoch_ms}-{shortId}`` for documents printed without a number."""
    prefix = NUMBER_PREFIXES[document_type]
    short = (short_id or uuid4().hex)[:8]
    return f"{prefix}-{int(clock() * 1000)}-{short}"


@dataclass
class MatchResult:
    company: Optional[Company]
    account_number: Optional[str]
    failure_reason: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.company is not None


class EntityMatcher:
    def __init__(self, companies: CompanyRepository, clock: Callable[[], float] = time.time):
        self.companies = companies
        self.clock = clock

    async def match(self, fields: Dict[str, Any]) -> MatchResult:
        account = fields.get("account_number")
        account = str(account).strip() if account not in (None, "") else None
        if not account:
            logger.info("entity_match_skipped", reason=NO_ACCOUNT_NUMBER)
            return MatchResult(company=None, account_number=None, failure_reason=NO_ACCOUNT_NUMBER)

        company = await self.companies.find_by_reference(account)
        if company is None:
            logger.info("entity_not_matched", account_number=account)
            return MatchResult(company=None, account_number=account, failure_reason=NO_COMPANY_MATCH)

        logger.info("entity_matched", account_number=account, company_id=company.id)
        return MatchResult(company=company, account_number=account)

    def build_business_document(
        self,
        document_type: DocumentType,
        fields: Dict[str, Any],
        company: Company,
        content_digest: Optional[str] = None,
    ) -> BusinessDocument:
        """
        Business document for a matched company.

        A missing number becomes a generated placeholder and a missing or
        unreadable date becomes today.
        """
        if document_type == DocumentType.CREDIT_NOTE:
            number = first_value(fields, ("credit_number", "invoice_number"))
        else:
            number = first_value(fields, ("invoice_number",))
        generated = number is None
        if generated:
            number = placeholder_number(document_type, content_digest, self.clock)

        issue_date: Optional[date] = parse_date(first_value(fields, DATE_KEYS))
        if issue_date is None:
            issue_date = utc_now().date()

        po = fields.get("customer_po")
        return BusinessDocument(
            kind=document_type,
            number=str(number).strip(),
            issue_date=issue_date,
            company_id=company.id,
            amount=parse_amount(first_value(fields, AMOUNT_KEYS)),
            vat_amount=parse_amount(fields.get("vat_amount")),
            goods_amount=parse_amount(fields.get("goods_amount")),
            customer_po=str(po).strip() if po not in (None, "") else None,
            number_generated=generated,
        )
