from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.lending_models import Borrower, Loan
from services.loan_service import LoanConflictError


_FIELD_MAP = {
    "name": "Name",
    "studentNumber": "StudentNumber",
    "career": "Career",
    "email": "Email",
    "phone": "Phone",
}


def apply_borrower_fields(borrower: Borrower, values: dict) -> None:
    for field, value in values.items():
        column = _FIELD_MAP.get(field)
        if column is None:
            continue
        setattr(borrower, column, str(value or "").strip())
    if not borrower.Name:
        raise ValueError("Borrower name is required.")
    if not borrower.StudentNumber:
        raise ValueError("Student number is required.")
    if borrower.Email and "@" not in borrower.Email:
        raise ValueError("Email address is not valid.")


def create_borrower(db: Session, values: dict, *, now: datetime | None = None) -> Borrower:
    borrower = Borrower(CreatedDate=now or datetime.now())
    apply_borrower_fields(borrower, values)
    db.add(borrower)
    db.flush()
    return borrower


def ensure_borrower_deletable(db: Session, borrower: Borrower) -> None:
    active = db.execute(
        select(func.count(Loan.LoanID)).where(Loan.BorrowerID == borrower.BorrowerID)
    ).scalar()
    if active:
        raise LoanConflictError("Borrower has tools on loan and cannot be deleted.")


def list_careers(db: Session) -> list[str]:
    rows = db.execute(
        select(Borrower.Career).where(Borrower.Career.is_not(None)).distinct().order_by(Borrower.Career)
    ).scalars().all()
    return [row for row in rows if row]


def serialize_borrower(borrower: Borrower) -> dict:
    return {
        "borrowerID": borrower.BorrowerID,
        "name": borrower.Name,
        "studentNumber": borrower.StudentNumber,
        "career": borrower.Career,
        "email": borrower.Email,
        "phone": borrower.Phone,
        "createdDate": borrower.CreatedDate,
    }
