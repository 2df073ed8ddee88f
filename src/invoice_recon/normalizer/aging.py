"""Receivable/payable aging buckets."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union

from ..schemas.documents import AgingBucket, CanonicalDocument, PaymentStatus

# Settled documents never age
SETTLED_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.OVERPAID, PaymentStatus.VOID})


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def compute_aging(
    due_date: Optional[date],
    now: Union[date, datetime],
    payment_status: PaymentStatus,
) -> tuple[AgingBucket, int]:
    """Return ``(bucket, days_overdue)`` for a document.

    >>> compute_aging(date(2024, 1, 1), date(2024, 2, 1), PaymentStatus.UNPAID)
    (<AgingBucket.DAYS_31_60: '31-60'>, 31)
    """
    if due_date is None or payment_status in SETTLED_STATUSES:
        return AgingBucket.CURRENT, 0

    days = (_as_date(now) - due_date).days
    if days <= 0:
        return AgingBucket.CURRENT, 0
    if days <= 30:
        return AgingBucket.DAYS_1_30, days
    if days <= 60:
        return AgingBucket.DAYS_31_60, days
    if days <= 90:
        return AgingBucket.DAYS_61_90, days
    return AgingBucket.DAYS_90_PLUS, days


def refresh_aging(document: CanonicalDocument, now: Union[date, datetime]) -> bool:
    """Update a document's aging in place. Returns True if anything changed."""
    bucket, days = compute_aging(document.due_date, now, document.payment_status)
    changed = (bucket, days) != (document.aging_bucket, document.days_overdue)
    document.aging_bucket = bucket
    document.days_overdue = days
    return changed
