"""Loan status resolution.

Overdue is never stored on a loan row. Every view that shows a status asks
this module, so the grace period and the boundary rule live in one place.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta


LOAN_GRACE_DAYS = int(os.environ.get("LOAN_GRACE_DAYS") or "15")

STATUS_ACTIVE = "active"
STATUS_OVERDUE = "overdue"
STATUS_RETURNED = "returned"

SEVERITY_LEVELS = ("mild", "moderate", "severe")


def due_date_for(loan_date: datetime, grace_days: int | None = None) -> datetime:
    days = LOAN_GRACE_DAYS if grace_days is None else grace_days
    return loan_date + timedelta(days=days)


def derive_status(loan_date: datetime, now: datetime | None = None, grace_days: int | None = None) -> str:
    """Return "overdue" once `now` is strictly after the due date, else "active".

    A loan checked exactly at the due instant is still active.
    """
    current = now or datetime.now()
    if current > due_date_for(loan_date, grace_days):
        return STATUS_OVERDUE
    return STATUS_ACTIVE


def days_overdue(loan_date: datetime, now: datetime | None = None, grace_days: int | None = None) -> int:
    current = now or datetime.now()
    elapsed = current - due_date_for(loan_date, grace_days)
    return max(elapsed.days, 0)


def overdue_severity(days: int) -> str:
    if days <= 7:
        return "mild"
    if days <= 30:
        return "moderate"
    return "severe"


def resolve_loan_status(loan, now: datetime | None = None) -> dict:
    """Status fields for an active loan row, as every serializer exposes them."""
    status = derive_status(loan.LoanDate, now)
    payload = {"status": status, "daysOverdue": 0, "severity": None}
    if status == STATUS_OVERDUE:
        overdue_days = days_overdue(loan.LoanDate, now)
        payload["daysOverdue"] = overdue_days
        payload["severity"] = overdue_severity(overdue_days)
    return payload
