"""
Document retention dates.

Retention runs from either the upload date or the document's own date,
and expires at midnight UTC N days later.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

from docflow.models import DocumentRecord

UPLOAD_DATE = "upload_date"
INVOICE_DATE = "invoice_date"


def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def calculate_expiry(start: Union[date, datetime, None], days: Optional[int]) -> Optional[datetime]:
    """Midnight of ``start + days``; None when either is missing."""
    if start is None or not days or days <= 0:
        return None
    expiry = _as_datetime(start) + timedelta(days=days)
    return expiry.replace(hour=0, minute=0, second=0, microsecond=0)


def retention_start(document: DocumentRecord, basis: str = UPLOAD_DATE) -> datetime:
    """
    Pick the date the retention clock starts from.

    ``invoice_date`` falls back to the period end, then to the upload
    time, when the document carries no date of its own.
    """
    if basis == INVOICE_DATE:
        if document.issue_date:
            return _as_datetime(document.issue_date)
        if document.period_end:
            return _as_datetime(document.period_end)
    return _as_datetime(document.created_at)


def expiry_for(document: DocumentRecord, days: Optional[int], basis: str = UPLOAD_DATE) -> Optional[datetime]:
    return calculate_expiry(retention_start(document, basis), days)


def should_delete(
    document: DocumentRecord,
    days: Optional[int],
    now: datetime,
    basis: str = UPLOAD_DATE,
) -> bool:
    """True when retention is on, the document is live and its expiry has passed."""
    if not days or days <= 0 or document.is_deleted:
        return False
    expiry = expiry_for(document, days, basis)
    return expiry is not None and expiry <= now


def deleted_beyond_window(document: DocumentRecord, days: Optional[int], now: datetime) -> bool:
    """
    True when a soft-deleted document left the dedup window.

    Without a configured window a deleted document blocks its digest forever.
    """
    if document.deleted_at is None or not days or days <= 0:
        return False
    return document.deleted_at < now - timedelta(days=days)
